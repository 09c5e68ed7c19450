"""Run the GrubMatch API with uvicorn."""

from __future__ import annotations

import argparse

import uvicorn

from grubmatch.backend.config import load_settings
from grubmatch.backend.logging import setup_logging


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="GrubMatch API server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    args = parser.parse_args()

    setup_logging(settings.log_level)
    uvicorn.run("grubmatch.backend.api:app", host=args.host, port=args.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()

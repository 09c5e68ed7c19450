"""Apply the SQL schema to the configured PostgreSQL database."""

from __future__ import annotations

import logging
from pathlib import Path

from grubmatch.backend.config import load_settings
from grubmatch.backend.logging import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)
    if not settings.database_url:
        raise RuntimeError("GRUBMATCH_DATABASE_URL is required for migration")

    import psycopg

    schema_path = Path(__file__).with_name("db_schema.sql")
    schema_sql = schema_path.read_text(encoding="utf-8")

    with psycopg.connect(settings.database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
        conn.commit()
    logger.info("Applied schema from %s", schema_path.name)


if __name__ == "__main__":
    main()

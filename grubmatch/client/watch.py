"""Command-line follower that prints a group's live events."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from urllib.parse import urlencode

import httpx

from grubmatch.backend.events import dump_event
from grubmatch.backend.logging import setup_logging
from grubmatch.client.channel import BackoffPolicy, ChannelState, ReconnectingChannel


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow a GrubMatch group's live events")
    parser.add_argument("--server", default="http://127.0.0.1:8000")
    parser.add_argument("--group-id", required=True)
    parser.add_argument("--member-id", required=True)
    parser.add_argument("--binding", required=True)
    parser.add_argument("--max-attempts", type=int, default=8)
    parser.add_argument("--log-level", default="WARNING")
    return parser.parse_args(argv)


def wait_for_server(server_url: str, timeout_s: float = 8.0) -> bool:
    start = time.time()
    while time.time() - start < timeout_s:
        try:
            response = httpx.get(f"{server_url}/health", timeout=0.5)
            if response.status_code < 500:
                return True
        except httpx.HTTPError:
            pass
        time.sleep(0.2)
    return False


def build_ws_url(server: str, group_id: str, member_id: str, binding: str) -> str:
    base = server.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base.removeprefix("https://")
    elif base.startswith("http://"):
        base = "ws://" + base.removeprefix("http://")
    query = urlencode({"groupId": group_id, "memberId": member_id, "binding": binding})
    return f"{base}/ws?{query}"


def print_event(event: object) -> None:
    print(json.dumps(dump_event(event)), flush=True)  # type: ignore[arg-type]


def print_state(state: ChannelState) -> None:
    print(f"-- {state.value}", file=sys.stderr, flush=True)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level.upper())

    if not wait_for_server(args.server):
        print("Server not reachable.", file=sys.stderr)
        return 1

    channel = ReconnectingChannel(
        url=build_ws_url(args.server, args.group_id, args.member_id, args.binding),
        on_event=print_event,
        policy=BackoffPolicy(max_attempts=args.max_attempts),
        on_state=print_state,
    )
    try:
        final_state = asyncio.run(channel.run())
    except KeyboardInterrupt:
        return 0
    return 0 if final_state == ChannelState.TERMINAL else 1


if __name__ == "__main__":
    raise SystemExit(main())

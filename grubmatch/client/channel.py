"""Reconnecting WebSocket channel for following a group's event stream."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential
from websockets.asyncio.client import connect as websockets_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from grubmatch.backend.events import ResyncAction, SyncEvent, dump_event, parse_event
from grubmatch.backend.schemas import WireModel

logger = logging.getLogger(__name__)

# Policy violation (bad binding) and removal by the host; retrying cannot help.
TERMINAL_CLOSE_CODES = frozenset({1008, 4001})

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    BACKOFF = "backoff"
    TERMINAL = "terminal"
    OFFLINE = "offline"


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 8

    def delay(self, attempt: int) -> float:
        """Delay before reconnect attempt `attempt` (1-based)."""
        return min(self.base_delay * 2 ** max(attempt - 1, 0), self.max_delay)


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> Any: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]


async def open_websocket(url: str) -> Transport:
    return await websockets_connect(url)


def _is_rejection(exc: BaseException) -> bool:
    if isinstance(exc, InvalidStatus):
        return exc.response.status_code == 403
    if isinstance(exc, ConnectionClosed) and exc.rcvd is not None:
        return exc.rcvd.code in TERMINAL_CLOSE_CODES
    return False


class ReconnectingChannel:
    """Keeps one connection open, reconnecting with exponential backoff.

    Every successful (re)connect sends a `resync` action; the `sync` that
    answers it replaces whatever the caller had. `run` returns the final
    state: TERMINAL after `close()` or a rejection, OFFLINE once
    `policy.max_attempts` consecutive reconnects have failed.
    """

    def __init__(
        self,
        url: str,
        on_event: Callable[[Any], None],
        connect: Connector = open_websocket,
        policy: BackoffPolicy | None = None,
        on_state: Callable[[ChannelState], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.policy = policy if policy is not None else BackoffPolicy()
        self.state = ChannelState.CLOSED
        self.last_sync: SyncEvent | None = None
        self._on_event = on_event
        self._on_state = on_state
        self._connect = connect
        self._sleep = sleep
        self._transport: Transport | None = None
        self._closing = False

    async def run(self) -> ChannelState:
        dropped = False
        while not self._closing:
            if dropped:
                self._set_state(ChannelState.BACKOFF)
                await self._sleep(self.policy.delay(1))
            try:
                transport = await self._open(after_drop=dropped)
            except TRANSPORT_ERRORS as exc:
                if self._closing:
                    break
                if _is_rejection(exc):
                    logger.warning("Server rejected the connection: %s", exc)
                    break
                logger.warning("Giving up on %s: %s", self.url, exc)
                self._set_state(ChannelState.OFFLINE)
                return self.state
            if transport is None:
                break
            if self._closing:
                await transport.close()
                break
            if await self._serve(transport) or self._closing:
                break
            self._set_state(ChannelState.CLOSED)
            dropped = True

        self._set_state(ChannelState.TERMINAL)
        return self.state

    async def send(self, action: WireModel) -> None:
        if self._transport is None or self.state != ChannelState.OPEN:
            raise ConnectionError("Channel is not open")
        await self._transport.send(json.dumps(dump_event(action)))

    async def close(self) -> None:
        self._closing = True
        transport = self._transport
        if transport is not None:
            await transport.close()
        self._set_state(ChannelState.TERMINAL)

    async def _open(self, after_drop: bool) -> Transport | None:
        """Connect, retrying transient failures; None if closed meanwhile.

        After a drop the first backoff has already been slept, so waits
        continue from the second step of the policy.
        """
        multiplier = self.policy.base_delay * (2 if after_drop else 1)
        retrying = AsyncRetrying(
            retry=retry_if_exception(self._should_retry),
            wait=wait_exponential(multiplier=multiplier, max=self.policy.max_delay),
            stop=stop_after_attempt(self.policy.max_attempts + (0 if after_drop else 1)),
            before_sleep=self._before_backoff,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if self._closing:
                    return None
                self._set_state(ChannelState.CONNECTING)
                return await self._connect(self.url)
        return None

    def _should_retry(self, exc: BaseException) -> bool:
        return not self._closing and isinstance(exc, TRANSPORT_ERRORS) and not _is_rejection(exc)

    def _before_backoff(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info("Connect attempt %d failed: %s", retry_state.attempt_number, error)
        self._set_state(ChannelState.BACKOFF)

    async def _serve(self, transport: Transport) -> bool:
        """Pump events until the transport drops; True if the drop is final."""
        self._transport = transport
        self._set_state(ChannelState.OPEN)
        try:
            await transport.send(json.dumps(dump_event(ResyncAction())))
            while True:
                self._dispatch(await transport.recv())
        except TRANSPORT_ERRORS as exc:
            if _is_rejection(exc):
                logger.warning("Server closed the channel: %s", exc)
                return True
            logger.info("Connection dropped: %s", exc)
            return False
        finally:
            self._transport = None

    def _dispatch(self, raw: Any) -> None:
        try:
            event = parse_event(json.loads(raw))
        except ValueError:
            logger.warning("Ignoring malformed event from server")
            return
        if isinstance(event, SyncEvent):
            self.last_sync = event
        self._on_event(event)

    def _set_state(self, state: ChannelState) -> None:
        if state == self.state:
            return
        self.state = state
        if self._on_state is not None:
            self._on_state(state)

"""Side-channel notifications fired outside the WebSocket stream."""

from __future__ import annotations

import logging
from typing import Protocol

from .schemas import Group

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def all_done_swiping(self, group: Group) -> None:
        """Every member of `group` has finished the current deck."""


class LoggingNotifier:
    async def all_done_swiping(self, group: Group) -> None:
        logger.info("All %d members of group %s finished swiping", len(group.members), group.id)

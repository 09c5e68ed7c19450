"""Group session orchestration: identity checks, store updates and fan-out."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import WebSocket

from .candidates import CandidateCache
from .engine import MatchRule, find_matches, members_without_vote
from .errors import InvalidRequestError, NotFoundError, UnauthorizedError
from .events import (
    AllDoneSwipingEvent,
    DoneSwipingAction,
    HostChangedEvent,
    LiveReactionAction,
    LiveReactionEvent,
    MatchFoundEvent,
    MemberDoneSwipingEvent,
    MemberJoinedEvent,
    MemberLeftEvent,
    MemberRemovedEvent,
    NudgeAction,
    NudgeEvent,
    PreferencesUpdatedEvent,
    ResyncAction,
    StatusChangedEvent,
    SwipeAction,
    SwipeMadeEvent,
    SyncEvent,
    parse_action,
)
from .hub import BroadcastHub
from .models import CreatedGroup, JoinedGroup, LeadershipClaim, LoadMoreResult, SwipeOutcome
from .notify import LoggingNotifier, Notifier
from .schemas import Group, GroupMember, GroupStatus, Preferences, ReactionType, Restaurant, Swipe
from .security import MemberBindings
from .store import GroupStore

logger = logging.getLogger(__name__)


@dataclass
class GroupService:
    store: GroupStore
    bindings: MemberBindings
    candidates: CandidateCache
    hub: BroadcastHub
    match_rule: MatchRule = MatchRule.UNANIMOUS
    notifier: Notifier = field(default_factory=LoggingNotifier)

    # --- identity ---------------------------------------------------------

    def authorize(self, group_id: str, member_id: str, binding: str | None) -> tuple[Group, GroupMember]:
        """Return the group and acting member, or raise.

        The binding must corroborate exactly `member_id` for exactly
        `group_id`, and the member must still be listed in the store.
        """
        if not self.bindings.verify(member_id, group_id, binding):
            raise UnauthorizedError("Member binding missing or does not match this member")
        group = self.store.get_group(group_id)
        member = group.member(member_id)
        if member is None:
            raise UnauthorizedError("You are no longer a member of this group")
        return group, member

    def authorize_host(self, group_id: str, member_id: str, binding: str | None) -> tuple[Group, GroupMember]:
        group, member = self.authorize(group_id, member_id, binding)
        if not member.is_host:
            raise UnauthorizedError("Only the host can do that")
        return group, member

    # --- membership -------------------------------------------------------

    async def create_group(self, name: str, host_name: str, binding: str | None = None) -> tuple[CreatedGroup, str]:
        created = self.store.create_group(name=name, host_name=host_name)
        token = self.bindings.bind(created.group.id, created.host_member_id, binding)
        return created, token

    async def join_group(self, code: str, member_name: str, binding: str | None = None) -> tuple[JoinedGroup, str]:
        joined = self.store.join_group(code=code, member_name=member_name)
        token = self.bindings.bind(joined.group.id, joined.member_id, binding)
        member = joined.group.member(joined.member_id)
        if member is not None:
            await self.hub.broadcast(joined.group.id, MemberJoinedEvent(member=member), exclude_member_id=member.id)
        logger.info("Member %s joined group %s", joined.member_id, joined.group.id)
        return joined, token

    def get_group(self, group_id: str, member_id: str | None = None) -> Group:
        group = self.store.get_group(group_id)
        if member_id is not None and group.member(member_id) is None:
            raise NotFoundError("You are not a member of this group")
        return group

    async def remove_member(self, group_id: str, host_member_id: str, target_member_id: str, binding: str | None) -> Group:
        self.authorize_host(group_id, host_member_id, binding)
        before = self.store.get_group(group_id)
        target = before.member(target_member_id)
        group = self.store.remove_member(group_id, target_member_id)
        name = target.name if target is not None else ""
        await self.hub.broadcast(group_id, MemberRemovedEvent(member_id=target_member_id, member_name=name))
        await self.hub.disconnect_member(group_id, target_member_id)
        return group

    async def leave_group(self, group_id: str, member_id: str, binding: str | None) -> Group:
        _, member = self.authorize(group_id, member_id, binding)
        if member.is_host:
            raise InvalidRequestError("The host cannot leave; hand over or end the session instead")
        group = self.store.remove_member(group_id, member_id)
        await self.hub.broadcast(group_id, MemberLeftEvent(member_id=member_id), exclude_member_id=member_id)
        return group

    async def reclaim_leadership(
        self,
        group_id: str,
        leader_token: str,
        member_name: str,
        binding: str | None = None,
    ) -> tuple[LeadershipClaim, str]:
        claim = self.store.claim_leadership(group_id, leader_token=leader_token, member_name=member_name)
        token = self.bindings.bind(group_id, claim.member.id, binding)
        if not claim.reattached:
            await self.hub.broadcast(group_id, MemberJoinedEvent(member=claim.member), exclude_member_id=claim.member.id)
        await self.hub.broadcast(group_id, HostChangedEvent(member=claim.member))
        logger.info("Leadership of group %s reclaimed (reattached=%s)", group_id, claim.reattached)
        return claim, token

    # --- rounds -----------------------------------------------------------

    async def start_session(
        self,
        group_id: str,
        host_member_id: str,
        preferences: Preferences,
        binding: str | None,
    ) -> Group:
        self.authorize_host(group_id, host_member_id, binding)
        group = self.store.start_session(group_id, preferences)
        self.candidates.invalidate(group_id)
        await self.hub.broadcast(group_id, PreferencesUpdatedEvent(preferences=preferences))
        await self.hub.broadcast(group_id, StatusChangedEvent(status=group.status))
        return group

    async def update_preferences(
        self,
        group_id: str,
        host_member_id: str,
        preferences: Preferences,
        binding: str | None,
    ) -> Group:
        self.authorize_host(group_id, host_member_id, binding)
        group = self.store.update_preferences(group_id, preferences)
        self.candidates.invalidate(group_id)
        await self.hub.broadcast(group_id, PreferencesUpdatedEvent(preferences=preferences))
        return group

    async def set_status(self, group_id: str, host_member_id: str, status: GroupStatus, binding: str | None) -> Group:
        self.authorize_host(group_id, host_member_id, binding)
        group = self.store.set_status(group_id, status)
        if status == "swiping":
            self.candidates.invalidate(group_id)
        await self.hub.broadcast(group_id, StatusChangedEvent(status=status))
        return group

    # --- deck and matches -------------------------------------------------

    async def get_candidates(self, group_id: str) -> list[Restaurant]:
        return await self.candidates.get_candidates(group_id)

    async def load_more(self, group_id: str) -> LoadMoreResult:
        result = await self.candidates.load_more(group_id)
        if result.added:
            self.store.reset_done_swiping(group_id)
            await self.hub.broadcast(group_id, await self.sync_event(group_id))
        return result

    async def get_matches(self, group_id: str) -> list[Restaurant]:
        restaurants = await self.candidates.get_candidates(group_id)
        snapshot = self.store.snapshot(group_id)
        return find_matches(self.match_rule, snapshot.group.member_ids, restaurants, snapshot.swipes)

    async def sync_event(self, group_id: str) -> SyncEvent:
        restaurants = await self.candidates.get_candidates(group_id)
        snapshot = self.store.snapshot(group_id)
        matches = find_matches(self.match_rule, snapshot.group.member_ids, restaurants, snapshot.swipes)
        return SyncEvent(group=snapshot.group, restaurants=restaurants, matches=matches)

    # --- swiping ----------------------------------------------------------

    async def swipe(
        self,
        group_id: str,
        member_id: str,
        restaurant_id: str,
        liked: bool,
        super_liked: bool,
        binding: str | None,
    ) -> SwipeOutcome:
        self.authorize(group_id, member_id, binding)
        if super_liked and not liked:
            raise InvalidRequestError("A super-like must also be a like")
        restaurants = await self.candidates.get_candidates(group_id)
        if not any(restaurant.id == restaurant_id for restaurant in restaurants):
            raise NotFoundError("That restaurant is not in this group's deck")
        already_matched = liked and self._matched(group_id, restaurants, restaurant_id) is not None

        swipe = self.store.record_swipe(
            group_id,
            Swipe(member_id=member_id, restaurant_id=restaurant_id, liked=liked, super_liked=super_liked),
        )
        matched = self._matched(group_id, restaurants, restaurant_id) if liked else None
        await self.hub.broadcast(group_id, SwipeMadeEvent(restaurant_id=restaurant_id), exclude_member_id=member_id)
        if matched is not None and not already_matched:
            logger.info("Group %s matched on %s", group_id, restaurant_id)
            await self.hub.broadcast(group_id, MatchFoundEvent(restaurant=matched))
        return SwipeOutcome(swipe=swipe, matched=matched)

    def _matched(self, group_id: str, restaurants: list[Restaurant], restaurant_id: str) -> Restaurant | None:
        snapshot = self.store.snapshot(group_id)
        matches = find_matches(self.match_rule, snapshot.group.member_ids, restaurants, snapshot.swipes)
        return next((restaurant for restaurant in matches if restaurant.id == restaurant_id), None)

    async def undo_swipe(self, group_id: str, member_id: str, restaurant_id: str, binding: str | None) -> None:
        self.authorize(group_id, member_id, binding)
        self.store.delete_swipe(group_id, member_id, restaurant_id)

    async def done_swiping(self, group_id: str, member_id: str, binding: str | None) -> Group:
        _, member = self.authorize(group_id, member_id, binding)
        group = self.store.mark_done_swiping(group_id, member_id)
        if member.done_swiping:
            return group

        await self.hub.broadcast(
            group_id,
            MemberDoneSwipingEvent(member_id=member_id, member_name=member.name),
            exclude_member_id=member_id,
        )
        if group.members and all(each.done_swiping for each in group.members):
            await self.hub.broadcast(group_id, AllDoneSwipingEvent())
            await self.notifier.all_done_swiping(group)
        return group

    async def nudge(self, group_id: str, from_member_id: str, restaurant_id: str, binding: str | None) -> list[str]:
        _, sender = self.authorize(group_id, from_member_id, binding)
        restaurants = await self.candidates.get_candidates(group_id)
        restaurant = next((candidate for candidate in restaurants if candidate.id == restaurant_id), None)
        if restaurant is None:
            raise NotFoundError("That restaurant is not in this group's deck")

        snapshot = self.store.snapshot(group_id)
        targets = [
            member_id
            for member_id in members_without_vote(snapshot.group.member_ids, restaurant_id, snapshot.swipes)
            if member_id != from_member_id
        ]
        if targets:
            event = NudgeEvent(
                from_member_name=sender.name,
                restaurant_id=restaurant_id,
                restaurant_name=restaurant.name,
                target_member_ids=targets,
            )
            await self.hub.send_to_members(group_id, targets, event)
        return targets

    async def react(
        self,
        group_id: str,
        member_id: str,
        restaurant_id: str,
        reaction: ReactionType,
        binding: str | None,
    ) -> None:
        _, member = self.authorize(group_id, member_id, binding)
        event = LiveReactionEvent(
            member_id=member_id,
            member_name=member.name,
            reaction=reaction,
            restaurant_id=restaurant_id,
        )
        await self.hub.broadcast(group_id, event, exclude_member_id=member_id)

    # --- persistent channel -----------------------------------------------

    async def connect(self, websocket: WebSocket, group_id: str, member_id: str, binding: str | None) -> None:
        """Validate, register and send the full snapshot to a new connection."""
        self.authorize(group_id, member_id, binding)
        await self.hub.register(websocket, group_id=group_id, member_id=member_id)
        await self.hub.send(websocket, await self.sync_event(group_id))

    async def handle_message(
        self,
        websocket: WebSocket,
        group_id: str,
        member_id: str,
        binding: str | None,
        payload: Any,
    ) -> None:
        action = parse_action(payload)
        if isinstance(action, SwipeAction):
            await self.swipe(group_id, member_id, action.restaurant_id, action.liked, action.super_liked, binding)
        elif isinstance(action, DoneSwipingAction):
            await self.done_swiping(group_id, member_id, binding)
        elif isinstance(action, NudgeAction):
            await self.nudge(group_id, member_id, action.restaurant_id, binding)
        elif isinstance(action, LiveReactionAction):
            await self.react(group_id, member_id, action.restaurant_id, action.reaction, binding)
        elif isinstance(action, ResyncAction):
            self.authorize(group_id, member_id, binding)
            await self.hub.send(websocket, await self.sync_event(group_id))

    # --- housekeeping -----------------------------------------------------

    def purge_stale_groups(self, ttl_hours: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=ttl_hours)
        removed = self.store.purge_stale_groups(cutoff)
        if removed:
            logger.info("Removed %d stale groups", removed)
        return removed

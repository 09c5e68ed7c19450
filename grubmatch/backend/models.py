"""Result records returned by store and service operations."""

from __future__ import annotations

from dataclasses import dataclass

from .schemas import Group, GroupMember, Restaurant, Swipe


@dataclass(frozen=True)
class CreatedGroup:
    group: Group
    host_member_id: str
    leader_token: str


@dataclass(frozen=True)
class JoinedGroup:
    group: Group
    member_id: str


@dataclass(frozen=True)
class LeadershipClaim:
    group: Group
    member: GroupMember
    reattached: bool


@dataclass(frozen=True)
class LoadMoreResult:
    restaurants: list[Restaurant]
    added: int


@dataclass(frozen=True)
class SwipeOutcome:
    swipe: Swipe
    matched: Restaurant | None


@dataclass(frozen=True)
class GroupSnapshot:
    """Group, its active swipes and cached candidates read under one lock."""

    group: Group
    swipes: list[Swipe]
    candidates: list[Restaurant] | None

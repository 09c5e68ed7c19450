"""Match engine: consensus over members, candidates and swipes."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeVar


class SwipeLike(Protocol):
    member_id: str
    restaurant_id: str
    liked: bool
    super_liked: bool


class CandidateLike(Protocol):
    id: str


C = TypeVar("C", bound=CandidateLike)

BOOST_NUMERATOR = 3
BOOST_DENOMINATOR = 5


class MatchRule(str, Enum):
    UNANIMOUS = "unanimous"
    SUPER_LIKE_BOOST = "super_like_boost"


@dataclass(frozen=True)
class Vote:
    liked: bool
    super_liked: bool


def latest_votes(swipes: Iterable[SwipeLike]) -> dict[tuple[str, str], Vote]:
    """Collapse swipes to one vote per (member, restaurant); later swipes win."""
    votes: dict[tuple[str, str], Vote] = {}
    for swipe in swipes:
        votes[(swipe.member_id, swipe.restaurant_id)] = Vote(
            liked=bool(swipe.liked),
            super_liked=bool(swipe.liked and swipe.super_liked),
        )
    return votes


def boost_threshold(member_count: int) -> int:
    """ceil(0.6 * member_count) in integer arithmetic."""
    return -(-member_count * BOOST_NUMERATOR // BOOST_DENOMINATOR)


def _likers(member_ids: Sequence[str], restaurant_id: str, votes: dict[tuple[str, str], Vote]) -> list[str]:
    return [member_id for member_id in member_ids if _vote(votes, member_id, restaurant_id).liked]


def _vote(votes: dict[tuple[str, str], Vote], member_id: str, restaurant_id: str) -> Vote:
    return votes.get((member_id, restaurant_id), Vote(liked=False, super_liked=False))


def _unique_members(member_ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(member_ids))


def find_unanimous_matches(member_ids: Iterable[str], restaurants: Sequence[C], swipes: Iterable[SwipeLike]) -> list[C]:
    members = _unique_members(member_ids)
    if not members:
        return []
    votes = latest_votes(swipes)
    matches: list[C] = []
    seen: set[str] = set()
    for restaurant in restaurants:
        if restaurant.id in seen:
            continue
        seen.add(restaurant.id)
        if len(_likers(members, restaurant.id, votes)) == len(members):
            matches.append(restaurant)
    return matches


def find_matches_with_super_like_boost(
    member_ids: Iterable[str],
    restaurants: Sequence[C],
    swipes: Iterable[SwipeLike],
) -> list[C]:
    """Unanimous matches plus candidates with a super-like and >= 60% likers."""
    members = _unique_members(member_ids)
    if not members:
        return []
    votes = latest_votes(swipes)
    threshold = boost_threshold(len(members))
    matches: list[C] = []
    seen: set[str] = set()
    for restaurant in restaurants:
        if restaurant.id in seen:
            continue
        seen.add(restaurant.id)
        likers = _likers(members, restaurant.id, votes)
        all_liked = len(likers) == len(members)
        super_liked = any(_vote(votes, member_id, restaurant.id).super_liked for member_id in likers)
        if all_liked or (super_liked and len(likers) >= threshold):
            matches.append(restaurant)
    return matches


def find_matches(
    rule: MatchRule,
    member_ids: Iterable[str],
    restaurants: Sequence[C],
    swipes: Iterable[SwipeLike],
) -> list[C]:
    if rule is MatchRule.SUPER_LIKE_BOOST:
        return find_matches_with_super_like_boost(member_ids, restaurants, swipes)
    return find_unanimous_matches(member_ids, restaurants, swipes)


def members_without_vote(member_ids: Iterable[str], restaurant_id: str, swipes: Iterable[SwipeLike]) -> list[str]:
    """Members with no vote of any kind on `restaurant_id`, in input order."""
    voted = {swipe.member_id for swipe in swipes if swipe.restaurant_id == restaurant_id}
    return [member_id for member_id in _unique_members(member_ids) if member_id not in voted]

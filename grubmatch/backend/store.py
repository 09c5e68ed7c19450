"""Persistence interfaces and implementations for group sessions."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from grubmatch.backend.errors import InvalidRequestError, NotFoundError, StoreError, UnauthorizedError
from grubmatch.backend.models import CreatedGroup, GroupSnapshot, JoinedGroup, LeadershipClaim
from grubmatch.backend.schemas import Group, GroupMember, GroupStatus, Preferences, Restaurant, Swipe
from grubmatch.backend.security import generate_token, tokens_match
from grubmatch.backend.state import (
    build_initial_group,
    build_member,
    generate_join_code,
    mark_member_done,
    normalize_join_code,
    reclaim_host,
    reset_done_swiping,
)

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 10


class GroupStore(Protocol):
    def create_group(self, name: str, host_name: str) -> CreatedGroup:
        """Create a group whose only member is the host; issue its leader token."""

    def join_group(self, code: str, member_name: str) -> JoinedGroup:
        """Append a new member to the group with this join code."""

    def get_group(self, group_id: str) -> Group:
        """Return the group or raise NotFoundError."""

    def get_group_by_code(self, code: str) -> Group:
        """Return the group with this join code (case-insensitive)."""

    def snapshot(self, group_id: str) -> GroupSnapshot:
        """Return group, active swipes and cached candidates consistently."""

    def update_preferences(self, group_id: str, preferences: Preferences) -> Group:
        """Replace preferences; resets done flags and the candidate cache."""

    def start_session(self, group_id: str, preferences: Preferences) -> Group:
        """Replace preferences and enter `swiping` in one update."""

    def set_status(self, group_id: str, status: GroupStatus) -> Group:
        """Set status; entering `swiping` starts a fresh round."""

    def add_member(self, group_id: str, member: GroupMember) -> Group:
        """Append an already built member."""

    def remove_member(self, group_id: str, member_id: str) -> Group:
        """Remove a non-host member."""

    def record_swipe(self, group_id: str, swipe: Swipe) -> Swipe:
        """Upsert the member's vote for one restaurant."""

    def delete_swipe(self, group_id: str, member_id: str, restaurant_id: str) -> None:
        """Drop the member's vote for one restaurant, if any."""

    def get_swipes(self, group_id: str) -> list[Swipe]:
        """Return one active swipe per (member, restaurant)."""

    def mark_done_swiping(self, group_id: str, member_id: str) -> Group:
        """Flag the member as finished with the current deck."""

    def reset_done_swiping(self, group_id: str) -> Group:
        """Clear every member's finished flag."""

    def claim_leadership(self, group_id: str, leader_token: str, member_name: str) -> LeadershipClaim:
        """Grant host status to the holder of the group's leader token."""

    def get_cached_candidates(self, group_id: str) -> list[Restaurant] | None:
        """Return the cached deck, or None when nothing is cached."""

    def save_candidates(self, group_id: str, restaurants: list[Restaurant]) -> None:
        """Replace the cached deck."""

    def clear_candidates(self, group_id: str) -> None:
        """Drop the cached deck."""

    def purge_stale_groups(self, older_than: datetime) -> int:
        """Delete groups created before `older_than`; return how many."""


def _ensure_removable(group: Group, member_id: str) -> GroupMember:
    member = group.member(member_id)
    if member is None:
        raise NotFoundError("Member not found in this group")
    if member.is_host:
        raise InvalidRequestError("The host cannot be removed; reassign the host first")
    return member


def _ensure_member(group: Group, member_id: str) -> GroupMember:
    member = group.member(member_id)
    if member is None:
        raise NotFoundError("Member not found in this group")
    return member


@dataclass
class _GroupRecord:
    group: Group
    leader_token: str
    swipes: dict[tuple[str, str], Swipe] = field(default_factory=dict)
    candidates: list[Restaurant] | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class InMemoryGroupStore:
    """Process-local store; one lock per group, none shared across groups."""

    def __post_init__(self) -> None:
        self._groups: dict[str, _GroupRecord] = {}
        self._codes: dict[str, str] = {}
        self._registry_lock = threading.Lock()

    def create_group(self, name: str, host_name: str) -> CreatedGroup:
        group_id = str(uuid.uuid4())
        host = build_member(name=host_name, is_host=True)
        leader_token = generate_token()
        with self._registry_lock:
            code = self._unused_code()
            group = build_initial_group(group_id=group_id, code=code, name=name, host=host)
            self._groups[group_id] = _GroupRecord(group=group, leader_token=leader_token)
            self._codes[code] = group_id
        logger.info("Created group %s with code %s", group_id, code)
        return CreatedGroup(group=group, host_member_id=host.id, leader_token=leader_token)

    def join_group(self, code: str, member_name: str) -> JoinedGroup:
        group_id = self._codes.get(normalize_join_code(code))
        if group_id is None:
            raise NotFoundError("No group with that code; it may have ended")
        member = build_member(name=member_name)
        with self._locked(group_id) as record:
            record.group = record.group.model_copy(update={"members": [*record.group.members, member]})
            return JoinedGroup(group=record.group, member_id=member.id)

    def get_group(self, group_id: str) -> Group:
        with self._locked(group_id) as record:
            return record.group

    def get_group_by_code(self, code: str) -> Group:
        group_id = self._codes.get(normalize_join_code(code))
        if group_id is None:
            raise NotFoundError("No group with that code; it may have ended")
        return self.get_group(group_id)

    def snapshot(self, group_id: str) -> GroupSnapshot:
        with self._locked(group_id) as record:
            candidates = list(record.candidates) if record.candidates is not None else None
            return GroupSnapshot(group=record.group, swipes=list(record.swipes.values()), candidates=candidates)

    def update_preferences(self, group_id: str, preferences: Preferences) -> Group:
        with self._locked(group_id) as record:
            record.group = record.group.model_copy(
                update={"preferences": preferences, "members": reset_done_swiping(record.group.members)}
            )
            record.candidates = None
            return record.group

    def start_session(self, group_id: str, preferences: Preferences) -> Group:
        with self._locked(group_id) as record:
            self._start_round(record)
            record.group = record.group.model_copy(update={"preferences": preferences, "status": "swiping"})
            return record.group

    def set_status(self, group_id: str, status: GroupStatus) -> Group:
        with self._locked(group_id) as record:
            if status == "swiping":
                self._start_round(record)
            record.group = record.group.model_copy(update={"status": status})
            return record.group

    def add_member(self, group_id: str, member: GroupMember) -> Group:
        with self._locked(group_id) as record:
            if record.group.member(member.id) is not None:
                raise InvalidRequestError("Member already belongs to this group")
            record.group = record.group.model_copy(update={"members": [*record.group.members, member]})
            return record.group

    def remove_member(self, group_id: str, member_id: str) -> Group:
        with self._locked(group_id) as record:
            _ensure_removable(record.group, member_id)
            members = [member for member in record.group.members if member.id != member_id]
            record.group = record.group.model_copy(update={"members": members})
            return record.group

    def record_swipe(self, group_id: str, swipe: Swipe) -> Swipe:
        with self._locked(group_id) as record:
            _ensure_member(record.group, swipe.member_id)
            record.swipes[(swipe.member_id, swipe.restaurant_id)] = swipe
            return swipe

    def delete_swipe(self, group_id: str, member_id: str, restaurant_id: str) -> None:
        with self._locked(group_id) as record:
            record.swipes.pop((member_id, restaurant_id), None)

    def get_swipes(self, group_id: str) -> list[Swipe]:
        with self._locked(group_id) as record:
            return list(record.swipes.values())

    def mark_done_swiping(self, group_id: str, member_id: str) -> Group:
        with self._locked(group_id) as record:
            members = mark_member_done(record.group.members, member_id)
            if members is None:
                raise NotFoundError("Member not found in this group")
            record.group = record.group.model_copy(update={"members": members})
            return record.group

    def reset_done_swiping(self, group_id: str) -> Group:
        with self._locked(group_id) as record:
            record.group = record.group.model_copy(update={"members": reset_done_swiping(record.group.members)})
            return record.group

    def claim_leadership(self, group_id: str, leader_token: str, member_name: str) -> LeadershipClaim:
        with self._locked(group_id) as record:
            if not tokens_match(leader_token, record.leader_token):
                raise UnauthorizedError("Leader token does not match this group")
            members, host, reattached = reclaim_host(record.group.members, member_name)
            record.group = record.group.model_copy(update={"members": members})
            return LeadershipClaim(group=record.group, member=host, reattached=reattached)

    def get_cached_candidates(self, group_id: str) -> list[Restaurant] | None:
        with self._locked(group_id) as record:
            return list(record.candidates) if record.candidates is not None else None

    def save_candidates(self, group_id: str, restaurants: list[Restaurant]) -> None:
        with self._locked(group_id) as record:
            record.candidates = list(restaurants)

    def clear_candidates(self, group_id: str) -> None:
        with self._locked(group_id) as record:
            record.candidates = None

    def purge_stale_groups(self, older_than: datetime) -> int:
        with self._registry_lock:
            stale = [group_id for group_id, record in self._groups.items() if record.group.created_at < older_than]
            for group_id in stale:
                record = self._groups.pop(group_id)
                self._codes.pop(record.group.code, None)
        return len(stale)

    @contextmanager
    def _locked(self, group_id: str) -> Iterator[_GroupRecord]:
        record = self._groups.get(group_id)
        if record is None:
            raise NotFoundError("Group not found; it may have ended")
        with record.lock:
            yield record

    def _start_round(self, record: _GroupRecord) -> None:
        record.group = record.group.model_copy(update={"members": reset_done_swiping(record.group.members)})
        record.swipes.clear()
        record.candidates = None

    def _unused_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_join_code()
            if code not in self._codes:
                return code
        raise StoreError("Could not allocate a unique join code")


def _dump_members(members: list[GroupMember]) -> str:
    return json.dumps([member.model_dump(mode="json", by_alias=True) for member in members])


def _dump_preferences(preferences: Preferences | None) -> str | None:
    if preferences is None:
        return None
    return json.dumps(preferences.model_dump(mode="json", by_alias=True))


def _load_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _row_to_group(row: tuple[Any, ...]) -> Group:
    group_id, code, name, status, members, preferences, created_at = row
    return Group.model_validate(
        {
            "id": group_id,
            "code": code,
            "name": name,
            "status": status,
            "members": _load_json(members) or [],
            "preferences": _load_json(preferences),
            "createdAt": created_at,
        }
    )


_GROUP_COLUMNS = "id, code, name, status, members, preferences, created_at"


@dataclass
class PostgresGroupStore:
    """Durable store. Each mutation locks the group row for its transaction."""

    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        import psycopg

        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
        except psycopg.Error as exc:
            raise StoreError(f"Database operation failed: {exc.__class__.__name__}") from exc

    def _lock_group(self, cur: Any, group_id: str) -> tuple[Group, str]:
        cur.execute(
            f"SELECT {_GROUP_COLUMNS}, leader_token FROM groups WHERE id = %s FOR UPDATE",
            (group_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise NotFoundError("Group not found; it may have ended")
        return _row_to_group(row[:7]), row[7]

    def _write_members(self, cur: Any, group_id: str, members: list[GroupMember]) -> None:
        cur.execute(
            "UPDATE groups SET members = %s::jsonb WHERE id = %s",
            (_dump_members(members), group_id),
        )

    def _start_round(self, cur: Any, group: Group) -> list[GroupMember]:
        cur.execute("DELETE FROM group_swipes WHERE group_id = %s", (group.id,))
        cur.execute("DELETE FROM group_candidates WHERE group_id = %s", (group.id,))
        return reset_done_swiping(group.members)

    def create_group(self, name: str, host_name: str) -> CreatedGroup:
        import psycopg

        group_id = str(uuid.uuid4())
        host = build_member(name=host_name, is_host=True)
        leader_token = generate_token()

        for _ in range(MAX_CODE_ATTEMPTS):
            group = build_initial_group(group_id=group_id, code=generate_join_code(), name=name, host=host)
            try:
                with self._transaction() as cur:
                    cur.execute(
                        """
                        INSERT INTO groups (id, code, name, status, members, preferences, leader_token, created_at)
                        VALUES (%s, %s, %s, %s, %s::jsonb, NULL, %s, %s)
                        """,
                        (
                            group.id,
                            group.code,
                            group.name,
                            group.status,
                            _dump_members(group.members),
                            leader_token,
                            group.created_at,
                        ),
                    )
            except StoreError as exc:
                if isinstance(exc.__cause__, psycopg.errors.UniqueViolation):
                    continue
                raise
            logger.info("Created group %s with code %s", group.id, group.code)
            return CreatedGroup(group=group, host_member_id=host.id, leader_token=leader_token)
        raise StoreError("Could not allocate a unique join code")

    def join_group(self, code: str, member_name: str) -> JoinedGroup:
        member = build_member(name=member_name)
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {_GROUP_COLUMNS} FROM groups WHERE code = %s FOR UPDATE",
                (normalize_join_code(code),),
            )
            row = cur.fetchone()
            if row is None:
                raise NotFoundError("No group with that code; it may have ended")
            group = _row_to_group(row)
            members = [*group.members, member]
            self._write_members(cur, group.id, members)
        return JoinedGroup(group=group.model_copy(update={"members": members}), member_id=member.id)

    def get_group(self, group_id: str) -> Group:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_GROUP_COLUMNS} FROM groups WHERE id = %s", (group_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("Group not found; it may have ended")
        return _row_to_group(row)

    def get_group_by_code(self, code: str) -> Group:
        with self._transaction() as cur:
            cur.execute(f"SELECT {_GROUP_COLUMNS} FROM groups WHERE code = %s", (normalize_join_code(code),))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError("No group with that code; it may have ended")
        return _row_to_group(row)

    def snapshot(self, group_id: str) -> GroupSnapshot:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            swipes = self._select_swipes(cur, group_id)
            candidates = self._select_candidates(cur, group_id)
        return GroupSnapshot(group=group, swipes=swipes, candidates=candidates)

    def update_preferences(self, group_id: str, preferences: Preferences) -> Group:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            members = reset_done_swiping(group.members)
            cur.execute(
                "UPDATE groups SET preferences = %s::jsonb, members = %s::jsonb WHERE id = %s",
                (_dump_preferences(preferences), _dump_members(members), group_id),
            )
            cur.execute("DELETE FROM group_candidates WHERE group_id = %s", (group_id,))
        return group.model_copy(update={"preferences": preferences, "members": members})

    def start_session(self, group_id: str, preferences: Preferences) -> Group:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            members = self._start_round(cur, group)
            cur.execute(
                """
                UPDATE groups
                SET preferences = %s::jsonb, members = %s::jsonb, status = 'swiping'
                WHERE id = %s
                """,
                (_dump_preferences(preferences), _dump_members(members), group_id),
            )
        return group.model_copy(update={"preferences": preferences, "members": members, "status": "swiping"})

    def set_status(self, group_id: str, status: GroupStatus) -> Group:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            members = self._start_round(cur, group) if status == "swiping" else group.members
            cur.execute(
                "UPDATE groups SET status = %s, members = %s::jsonb WHERE id = %s",
                (status, _dump_members(members), group_id),
            )
        return group.model_copy(update={"status": status, "members": members})

    def add_member(self, group_id: str, member: GroupMember) -> Group:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            if group.member(member.id) is not None:
                raise InvalidRequestError("Member already belongs to this group")
            members = [*group.members, member]
            self._write_members(cur, group_id, members)
        return group.model_copy(update={"members": members})

    def remove_member(self, group_id: str, member_id: str) -> Group:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            _ensure_removable(group, member_id)
            members = [member for member in group.members if member.id != member_id]
            self._write_members(cur, group_id, members)
        return group.model_copy(update={"members": members})

    def record_swipe(self, group_id: str, swipe: Swipe) -> Swipe:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            _ensure_member(group, swipe.member_id)
            cur.execute(
                """
                INSERT INTO group_swipes (group_id, member_id, restaurant_id, liked, super_liked, swiped_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (group_id, member_id, restaurant_id)
                DO UPDATE SET liked = EXCLUDED.liked, super_liked = EXCLUDED.super_liked, swiped_at = EXCLUDED.swiped_at
                """,
                (group_id, swipe.member_id, swipe.restaurant_id, swipe.liked, swipe.super_liked, swipe.swiped_at),
            )
        return swipe

    def delete_swipe(self, group_id: str, member_id: str, restaurant_id: str) -> None:
        with self._transaction() as cur:
            self._lock_group(cur, group_id)
            cur.execute(
                "DELETE FROM group_swipes WHERE group_id = %s AND member_id = %s AND restaurant_id = %s",
                (group_id, member_id, restaurant_id),
            )

    def get_swipes(self, group_id: str) -> list[Swipe]:
        with self._transaction() as cur:
            return self._select_swipes(cur, group_id)

    def mark_done_swiping(self, group_id: str, member_id: str) -> Group:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            members = mark_member_done(group.members, member_id)
            if members is None:
                raise NotFoundError("Member not found in this group")
            self._write_members(cur, group_id, members)
        return group.model_copy(update={"members": members})

    def reset_done_swiping(self, group_id: str) -> Group:
        with self._transaction() as cur:
            group, _ = self._lock_group(cur, group_id)
            members = reset_done_swiping(group.members)
            self._write_members(cur, group_id, members)
        return group.model_copy(update={"members": members})

    def claim_leadership(self, group_id: str, leader_token: str, member_name: str) -> LeadershipClaim:
        with self._transaction() as cur:
            group, stored_token = self._lock_group(cur, group_id)
            if not tokens_match(leader_token, stored_token):
                raise UnauthorizedError("Leader token does not match this group")
            members, host, reattached = reclaim_host(group.members, member_name)
            self._write_members(cur, group_id, members)
        return LeadershipClaim(group=group.model_copy(update={"members": members}), member=host, reattached=reattached)

    def get_cached_candidates(self, group_id: str) -> list[Restaurant] | None:
        with self._transaction() as cur:
            return self._select_candidates(cur, group_id)

    def save_candidates(self, group_id: str, restaurants: list[Restaurant]) -> None:
        payload = json.dumps([restaurant.model_dump(mode="json", by_alias=True) for restaurant in restaurants])
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO group_candidates (group_id, restaurants, updated_at)
                VALUES (%s, %s::jsonb, now())
                ON CONFLICT (group_id) DO UPDATE SET restaurants = EXCLUDED.restaurants, updated_at = now()
                """,
                (group_id, payload),
            )

    def clear_candidates(self, group_id: str) -> None:
        with self._transaction() as cur:
            cur.execute("DELETE FROM group_candidates WHERE group_id = %s", (group_id,))

    def purge_stale_groups(self, older_than: datetime) -> int:
        with self._transaction() as cur:
            cur.execute("DELETE FROM groups WHERE created_at < %s", (older_than,))
            return cur.rowcount

    def _select_swipes(self, cur: Any, group_id: str) -> list[Swipe]:
        cur.execute(
            """
            SELECT member_id, restaurant_id, liked, super_liked, swiped_at
            FROM group_swipes
            WHERE group_id = %s
            ORDER BY swiped_at
            """,
            (group_id,),
        )
        return [
            Swipe(member_id=member_id, restaurant_id=restaurant_id, liked=liked, super_liked=super_liked, swiped_at=swiped_at)
            for member_id, restaurant_id, liked, super_liked, swiped_at in cur.fetchall()
        ]

    def _select_candidates(self, cur: Any, group_id: str) -> list[Restaurant] | None:
        cur.execute("SELECT restaurants FROM group_candidates WHERE group_id = %s", (group_id,))
        row = cur.fetchone()
        if row is None:
            return None
        return [Restaurant.model_validate(item) for item in _load_json(row[0]) or []]


def create_store(database_url: str | None) -> GroupStore:
    if database_url:
        return PostgresGroupStore(database_url=database_url)
    return InMemoryGroupStore()

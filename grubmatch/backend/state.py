"""State builders for new groups and members."""

from __future__ import annotations

import secrets
import uuid

from .schemas import Group, GroupMember, utc_now

JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6


def generate_join_code() -> str:
    """Return a shareable join code without look-alike characters (I, O, 0, 1)."""
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))


def normalize_join_code(code: str) -> str:
    return code.strip().upper()


def new_member_id() -> str:
    return str(uuid.uuid4())


def build_member(name: str, is_host: bool = False) -> GroupMember:
    return GroupMember(id=new_member_id(), name=name, is_host=is_host, joined_at=utc_now(), done_swiping=False)


def build_initial_group(group_id: str, code: str, name: str, host: GroupMember) -> Group:
    """Return a fresh group in `waiting` with the host as its only member."""
    return Group(
        id=group_id,
        code=code,
        name=name,
        members=[host],
        preferences=None,
        status="waiting",
        created_at=host.joined_at,
    )


def reset_done_swiping(members: list[GroupMember]) -> list[GroupMember]:
    return [member.model_copy(update={"done_swiping": False}) for member in members]


def mark_member_done(members: list[GroupMember], member_id: str) -> list[GroupMember] | None:
    if not any(member.id == member_id for member in members):
        return None
    return [
        member.model_copy(update={"done_swiping": True}) if member.id == member_id else member for member in members
    ]


def reclaim_host(members: list[GroupMember], member_name: str) -> tuple[list[GroupMember], GroupMember, bool]:
    """Grant host to the member named `member_name`, or to a new member.

    Any other host flag is cleared so the group ends with exactly one host.
    Returns the new member list, the host and whether it was re-attached.
    """
    existing = next((member for member in members if member.name == member_name), None)
    if existing is not None:
        host = existing.model_copy(update={"is_host": True})
        updated = [host if member.id == existing.id else member.model_copy(update={"is_host": False}) for member in members]
        return updated, host, True

    host = build_member(name=member_name, is_host=True)
    updated = [member.model_copy(update={"is_host": False}) for member in members]
    updated.append(host)
    return updated, host, False

"""Tagged unions for messages on the persistent channel.

Outbound events are what the hub fans out; inbound actions are what a
connected client may send. Both are discriminated on `type`.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter

from .schemas import Group, GroupMember, GroupStatus, Preferences, ReactionType, Restaurant, WireModel


class SyncEvent(WireModel):
    type: Literal["sync"] = "sync"
    group: Group
    restaurants: list[Restaurant]
    matches: list[Restaurant]


class MemberJoinedEvent(WireModel):
    type: Literal["member_joined"] = "member_joined"
    member: GroupMember


class MemberLeftEvent(WireModel):
    type: Literal["member_left"] = "member_left"
    member_id: str


class MemberRemovedEvent(WireModel):
    type: Literal["member_removed"] = "member_removed"
    member_id: str
    member_name: str


class PreferencesUpdatedEvent(WireModel):
    type: Literal["preferences_updated"] = "preferences_updated"
    preferences: Preferences


class StatusChangedEvent(WireModel):
    type: Literal["status_changed"] = "status_changed"
    status: GroupStatus


class SwipeMadeEvent(WireModel):
    type: Literal["swipe_made"] = "swipe_made"
    restaurant_id: str


class MatchFoundEvent(WireModel):
    type: Literal["match_found"] = "match_found"
    restaurant: Restaurant


class NudgeEvent(WireModel):
    type: Literal["nudge"] = "nudge"
    from_member_name: str
    restaurant_id: str
    restaurant_name: str
    target_member_ids: list[str]


class MemberDoneSwipingEvent(WireModel):
    type: Literal["member_done_swiping"] = "member_done_swiping"
    member_id: str
    member_name: str


class AllDoneSwipingEvent(WireModel):
    type: Literal["all_done_swiping"] = "all_done_swiping"


class LiveReactionEvent(WireModel):
    type: Literal["live_reaction"] = "live_reaction"
    member_id: str
    member_name: str
    reaction: ReactionType
    restaurant_id: str


class HostChangedEvent(WireModel):
    type: Literal["host_changed"] = "host_changed"
    member: GroupMember


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    code: str | None
    message: str


GroupEvent = Annotated[
    Union[
        SyncEvent,
        MemberJoinedEvent,
        MemberLeftEvent,
        MemberRemovedEvent,
        PreferencesUpdatedEvent,
        StatusChangedEvent,
        SwipeMadeEvent,
        MatchFoundEvent,
        NudgeEvent,
        MemberDoneSwipingEvent,
        AllDoneSwipingEvent,
        LiveReactionEvent,
        HostChangedEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


class SwipeAction(WireModel):
    type: Literal["swipe"] = "swipe"
    restaurant_id: str = Field(min_length=1)
    liked: bool
    super_liked: bool = False


class DoneSwipingAction(WireModel):
    type: Literal["done_swiping"] = "done_swiping"


class NudgeAction(WireModel):
    type: Literal["nudge"] = "nudge"
    restaurant_id: str = Field(min_length=1)


class LiveReactionAction(WireModel):
    type: Literal["live_reaction"] = "live_reaction"
    restaurant_id: str = Field(min_length=1)
    reaction: ReactionType


class ResyncAction(WireModel):
    type: Literal["resync"] = "resync"


ClientAction = Annotated[
    Union[SwipeAction, DoneSwipingAction, NudgeAction, LiveReactionAction, ResyncAction],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(GroupEvent)
_action_adapter: TypeAdapter[Any] = TypeAdapter(ClientAction)


def dump_event(event: WireModel) -> dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True)


def parse_event(payload: Any) -> Any:
    return _event_adapter.validate_python(payload)


def parse_action(payload: Any) -> Any:
    return _action_adapter.validate_python(payload)

"""Pydantic domain models shared by the store, the service and the wire."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

DietaryRestriction = Literal[
    "vegetarian",
    "vegan",
    "gluten-free",
    "halal",
    "kosher",
    "dairy-free",
    "nut-free",
    "pescatarian",
]

Cuisine = Literal[
    "Italian",
    "Mexican",
    "Chinese",
    "Japanese",
    "Indian",
    "Thai",
    "American",
    "Mediterranean",
    "French",
    "Korean",
    "Vietnamese",
    "Greek",
    "Middle Eastern",
    "Spanish",
    "Seafood",
    "Steakhouse",
    "Pizza",
    "Burger",
    "Sushi",
    "BBQ",
]

PriceRange = Literal["$", "$$", "$$$", "$$$$"]

GroupStatus = Literal["waiting", "configuring", "swiping", "completed"]

ReactionType = Literal["fire", "heart", "drool", "thumbsup", "eyes", "star"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python, immutable once built."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class Preferences(WireModel):
    location: str = Field(min_length=1, max_length=100)
    radius: float = Field(default=10, ge=1, le=50)
    price_range: list[PriceRange] = Field(default_factory=lambda: ["$", "$$", "$$$"])
    cuisine_types: list[Cuisine] = Field(default_factory=list)
    dietary_restrictions: list[DietaryRestriction] = Field(default_factory=list)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    min_rating: float | None = Field(default=None, ge=0, le=5)
    try_something_new: bool = False
    exclude_cuisines: list[str] = Field(default_factory=list)
    exclude_visited: bool = False

    @model_validator(mode="after")
    def _coordinates_come_in_pairs(self) -> Preferences:
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class GroupMember(WireModel):
    id: str
    name: str = Field(min_length=1, max_length=50)
    is_host: bool = False
    joined_at: datetime = Field(default_factory=utc_now)
    done_swiping: bool = False


class Group(WireModel):
    id: str
    code: str = Field(min_length=6, max_length=6)
    name: str = Field(min_length=1)
    members: list[GroupMember] = Field(default_factory=list)
    preferences: Preferences | None = None
    status: GroupStatus = "waiting"
    created_at: datetime = Field(default_factory=utc_now)

    def member(self, member_id: str) -> GroupMember | None:
        for member in self.members:
            if member.id == member_id:
                return member
        return None

    @property
    def member_ids(self) -> list[str]:
        return [member.id for member in self.members]

    @property
    def host(self) -> GroupMember | None:
        for member in self.members:
            if member.is_host:
                return member
        return None


class Restaurant(WireModel):
    id: str
    name: str
    cuisine: Cuisine
    price_range: PriceRange
    rating: float = Field(ge=0, le=5)
    review_count: int = 0
    image_url: str = ""
    address: str = ""
    distance: float = 0
    dietary_options: list[DietaryRestriction] = Field(default_factory=list)
    description: str = ""
    url: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    phone: str | None = None
    transactions: list[str] = Field(default_factory=list)
    highlights: list[str] = Field(default_factory=list)
    google_rating: float | None = None
    google_review_count: int | None = None
    google_maps_url: str | None = None


class Swipe(WireModel):
    member_id: str = Field(min_length=1)
    restaurant_id: str = Field(min_length=1)
    liked: bool
    super_liked: bool = False
    swiped_at: datetime = Field(default_factory=utc_now)

    @field_validator("super_liked")
    @classmethod
    def _super_like_implies_like(cls, value: bool, info: ValidationInfo) -> bool:
        if value and info.data.get("liked") is False:
            raise ValueError("a super-like must also be a like")
        return value

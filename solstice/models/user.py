from __future__ import annotations

import enum
from datetime import date
from typing import Any, ClassVar, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..db.collections import FOLLOWS_COLLECTION, USERS_COLLECTION
from .base import DocumentModel
from .identifiers import UtcDatetime

DEFAULT_MAX_DISTANCE_MILES = 50
MIN_AGE = 18
MAX_AGE = 100
MAX_DATING_IMAGES = 5


class Gender(str, enum.Enum):
    MALE = "male"
    FEMALE = "female"
    NON_BINARY = "nonBinary"
    OTHER = "other"


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class AgeRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    min: int = Field(MIN_AGE, ge=MIN_AGE, le=MAX_AGE)
    max: int = Field(MAX_AGE, ge=MIN_AGE, le=MAX_AGE)

    @model_validator(mode="after")
    def _ordered(self) -> "AgeRange":
        if self.min > self.max:
            raise ValueError("ageRange.min must not exceed ageRange.max")
        return self

    def overlaps(self, other: "AgeRange") -> bool:
        return self.max >= other.min and self.min <= other.max


class User(DocumentModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", use_enum_values=True)

    collection: ClassVar[str] = USERS_COLLECTION

    username: str = ""
    email: Optional[str] = None
    full_name: Optional[str] = Field(None, alias="fullName")
    bio: Optional[str] = None
    is_private: bool = Field(False, alias="isPrivate")
    is_dating_enabled: bool = Field(False, alias="isDatingEnabled")
    profile_image_url: Optional[str] = Field(None, alias="profileImageURL")
    location: Optional[GeoPoint] = None
    gender: Optional[Gender] = None
    interested_in: List[Gender] = Field(default_factory=list, alias="interestedIn")
    max_distance: int = Field(DEFAULT_MAX_DISTANCE_MILES, alias="maxDistance", ge=1)
    age_range: AgeRange = Field(default_factory=AgeRange, alias="ageRange")
    followers_count: int = Field(0, alias="followersCount")
    following_count: int = Field(0, alias="followingCount")
    created_at: Optional[UtcDatetime] = Field(None, alias="createdAt")
    dating_images: List[str] = Field(default_factory=list, alias="datingImages", max_length=MAX_DATING_IMAGES)
    birthday: Optional[UtcDatetime] = None
    # carried for clients; the six-month cooldown is not enforced here
    gender_preference_changed_at: Optional[UtcDatetime] = Field(None, alias="genderPreferenceChangedAt")

    @model_validator(mode="before")
    @classmethod
    def _flattened_age_range(cls, data: Any) -> Any:
        # legacy documents store "ageRange.min" / "ageRange.max" as literal keys
        if not isinstance(data, dict):
            return data
        if "ageRange.min" not in data and "ageRange.max" not in data:
            return data
        data = dict(data)
        nested = dict(data.get("ageRange") or {})
        nested.setdefault("min", data.pop("ageRange.min", MIN_AGE))
        nested.setdefault("max", data.pop("ageRange.max", MAX_AGE))
        data["ageRange"] = nested
        return data

    @field_validator("is_private", "is_dating_enabled", mode="before")
    @classmethod
    def _int_flags(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return value != 0
        return value

    @field_validator("interested_in", mode="before")
    @classmethod
    def _dedupe_interests(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple, set)):
            seen: List[Any] = []
            for entry in value:
                if entry not in seen:
                    seen.append(entry)
            return seen
        return value

    def age_on(self, today: date) -> Optional[int]:
        if self.birthday is None:
            return None
        born = self.birthday.date()
        return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


class DatingFilters(BaseModel):
    """Viewer-side candidate filters; defaults mirror the viewer's stored preferences."""

    model_config = ConfigDict(use_enum_values=True)

    genders: FrozenSet[Gender] = frozenset()
    age_range: AgeRange = Field(default_factory=AgeRange)
    max_distance_miles: float = DEFAULT_MAX_DISTANCE_MILES

    @classmethod
    def for_user(cls, user: User) -> "DatingFilters":
        return cls(
            genders=frozenset(user.interested_in),
            age_range=user.age_range,
            max_distance_miles=float(user.max_distance),
        )


class Follow(DocumentModel):
    collection: ClassVar[str] = FOLLOWS_COLLECTION

    follower_id: str = Field(..., alias="followerId")
    following_id: str = Field(..., alias="followingId")
    created_at: Optional[UtcDatetime] = Field(None, alias="createdAt")


__all__ = [
    "AgeRange",
    "DEFAULT_MAX_DISTANCE_MILES",
    "DatingFilters",
    "Follow",
    "Gender",
    "GeoPoint",
    "MAX_AGE",
    "MIN_AGE",
    "User",
]

"""
Community record models.

Records read from the network are validated here before anything else looks at them. A record
with a missing or malformed field, or with a $type naming a different collection, fails
validation and is treated by callers as if it could not be fetched.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Generic, Literal, Optional, TypeVar
from pydantic import BaseModel, ConfigDict, Field, StringConstraints

MEMBERSHIP_COLLECTION = "community.opensocial.membership"
MEMBERSHIP_CONFIRMATION_COLLECTION = "community.opensocial.membershipConfirmation"
PROFILE_COLLECTION = "community.opensocial.profile"
PROFILE_RKEY = "self"

Did = Annotated[str, StringConstraints(pattern=r"^did:[a-z]+:[a-zA-Z0-9._:%-]+$")]
AtUri = Annotated[str, StringConstraints(pattern=r"^at://[^/]+/[^/]+/[^/]+$")]


class RecordModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MembershipClaim(RecordModel):
    """A user's statement that they joined a community. Lives in the user's repository."""

    record_type: Literal["community.opensocial.membership"] = Field(
        default=MEMBERSHIP_COLLECTION, alias="$type"
    )
    community: Did
    joined_at: datetime = Field(alias="joinedAt")


class MembershipConfirmation(RecordModel):
    """A community's acknowledgement of one membership claim. Lives in the community's repository."""

    record_type: Literal["community.opensocial.membershipConfirmation"] = Field(
        default=MEMBERSHIP_CONFIRMATION_COLLECTION, alias="$type"
    )
    member: Did
    membership: AtUri
    confirmed_at: datetime = Field(alias="confirmedAt")


class CommunityProfile(RecordModel):
    record_type: Literal["community.opensocial.profile"] = Field(
        default=PROFILE_COLLECTION, alias="$type", exclude=True
    )
    display_name: str = Field(alias="displayName")
    description: Optional[str] = None
    avatar: Optional[Dict[str, Any]] = None
    banner: Optional[Dict[str, Any]] = None
    guidelines: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")


RecordT = TypeVar("RecordT", bound=RecordModel)


class RecordEntry(BaseModel, Generic[RecordT]):
    """A record as listed or fetched from a repository, together with its address."""

    uri: AtUri
    cid: Optional[str] = None
    value: RecordT


class MembershipStatus(str, Enum):
    pending = "pending"
    active = "active"


class MembershipView(RecordModel):
    """A membership claim joined with the community's confirmation state and profile."""

    uri: AtUri
    community: Did
    joined_at: datetime = Field(alias="joinedAt")
    status: MembershipStatus
    community_profile: CommunityProfile = Field(alias="communityProfile")

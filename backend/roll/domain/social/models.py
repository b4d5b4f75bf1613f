"""Domain models for users, friend requests and derived relationships."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, FrozenSet, Optional

from roll.store.base import DocumentSnapshot

USERS = "users"
FRIEND_REQUESTS = "friendRequests"

FIELD_FRIENDS = "friends"
FIELD_BLOCKED = "blocked"
FIELD_BLOCKED_BY = "blockedBy"

DEFAULT_DISPLAY_NAME = "No Name"


class RequestStatus(str, Enum):
	"""Friend request lifecycle."""

	PENDING = "pending"
	ACCEPTED = "accepted"
	DECLINED = "declined"


class Decision(str, Enum):
	ACCEPT = "accept"
	DECLINE = "decline"

	@property
	def status(self) -> RequestStatus:
		return RequestStatus.ACCEPTED if self is Decision.ACCEPT else RequestStatus.DECLINED


class Relationship(str, Enum):
	"""Pair state as seen by the viewer, derived at read time."""

	SELF = "self"
	FRIEND = "friend"
	BLOCKED_BY_VIEWER = "blocked-by-viewer"
	BLOCKED_BY_CANDIDATE = "blocked-by-candidate"
	PENDING_OUTGOING = "pending-outgoing"
	PENDING_INCOMING = "pending-incoming"
	NONE = "none"


def _id_set(value: Any) -> FrozenSet[str]:
	if not isinstance(value, list):
		return frozenset()
	return frozenset(str(item) for item in value)


@dataclass(slots=True)
class User:
	id: str
	display_name: str
	profile_image: str = ""
	friends: FrozenSet[str] = field(default_factory=frozenset)
	blocked: FrozenSet[str] = field(default_factory=frozenset)
	blocked_by: FrozenSet[str] = field(default_factory=frozenset)

	@classmethod
	def from_snapshot(cls, snapshot: DocumentSnapshot) -> "User":
		data = snapshot.data or {}
		return cls(
			id=snapshot.id,
			display_name=data.get("displayName") or DEFAULT_DISPLAY_NAME,
			profile_image=data.get("profileImage") or "",
			friends=_id_set(data.get(FIELD_FRIENDS)),
			blocked=_id_set(data.get(FIELD_BLOCKED)),
			blocked_by=_id_set(data.get(FIELD_BLOCKED_BY)),
		)

	def has_blocked(self, other_id: str) -> bool:
		return other_id in self.blocked

	def is_blocked_by(self, other_id: str) -> bool:
		return other_id in self.blocked_by


@dataclass(slots=True)
class FriendRequest:
	"""Represents a directional friend request."""

	id: str
	from_user_id: str
	to_user_id: str
	status: RequestStatus
	created_at: Optional[datetime] = None

	@classmethod
	def from_snapshot(cls, snapshot: DocumentSnapshot) -> "FriendRequest":
		data = snapshot.data or {}
		return cls(
			id=snapshot.id,
			from_user_id=str(data.get("from", "")),
			to_user_id=str(data.get("to", "")),
			status=RequestStatus(data.get("status", RequestStatus.PENDING.value)),
			created_at=data.get("timestamp"),
		)

	@property
	def is_open(self) -> bool:
		return self.status is RequestStatus.PENDING

"""Policy helpers and guard checks for friend requests and relationships."""

from __future__ import annotations

from typing import List, Optional, Union

from roll.domain.social.exceptions import (
	AlreadyFriends,
	RelationshipBlocked,
	RequestAlreadySent,
	SelfTargetError,
	UserNotFound,
)
from roll.domain.social.models import FRIEND_REQUESTS, USERS, FriendRequest, Relationship, RequestStatus, User
from roll.store.base import DocumentStore, Transaction, where

Reader = Union[DocumentStore, Transaction]


def guard_not_self(user_id: str, target_id: str) -> None:
	if str(user_id) == str(target_id):
		raise SelfTargetError()


async def load_user(reader: Reader, user_id: str) -> User:
	snapshot = await reader.get(USERS, str(user_id))
	if not snapshot.exists:
		raise UserNotFound()
	return User.from_snapshot(snapshot)


async def load_users(reader: Reader, *user_ids: str) -> List[User]:
	return [await load_user(reader, user_id) for user_id in user_ids]


def is_blocked_either_way(user_a: User, user_b: User) -> bool:
	return (
		user_a.has_blocked(user_b.id)
		or user_b.has_blocked(user_a.id)
		or user_a.is_blocked_by(user_b.id)
		or user_b.is_blocked_by(user_a.id)
	)


def ensure_not_blocked(user_a: User, user_b: User) -> None:
	if is_blocked_either_way(user_a, user_b):
		raise RelationshipBlocked()


def are_friends(user_a: User, user_b: User) -> bool:
	return user_b.id in user_a.friends and user_a.id in user_b.friends


def ensure_not_already_friends(user_a: User, user_b: User) -> None:
	if user_b.id in user_a.friends or user_a.id in user_b.friends:
		raise AlreadyFriends()


async def get_open_requests(store: DocumentStore, from_user_id: str, to_user_id: str) -> List[FriendRequest]:
	snapshots = await store.query(
		FRIEND_REQUESTS,
		[
			where("from", "==", str(from_user_id)),
			where("to", "==", str(to_user_id)),
			where("status", "==", RequestStatus.PENDING.value),
		],
	)
	return [FriendRequest.from_snapshot(snapshot) for snapshot in snapshots]


async def get_open_request(store: DocumentStore, from_user_id: str, to_user_id: str) -> Optional[FriendRequest]:
	requests = await get_open_requests(store, from_user_id, to_user_id)
	return requests[0] if requests else None


async def ensure_no_open_request(store: DocumentStore, from_user_id: str, to_user_id: str) -> None:
	if await get_open_request(store, from_user_id, to_user_id):
		raise RequestAlreadySent()


def derive_relationship(
	viewer: User,
	other: User,
	*,
	outgoing_open: bool = False,
	incoming_open: bool = False,
) -> Relationship:
	"""Collapse the stored sets and open requests into one pair state.

	A block on either side outranks friendship and pending requests; a stale
	pending request never resurfaces once a block exists.
	"""
	if viewer.id == other.id:
		return Relationship.SELF
	if viewer.has_blocked(other.id) or other.is_blocked_by(viewer.id):
		return Relationship.BLOCKED_BY_VIEWER
	if other.has_blocked(viewer.id) or viewer.is_blocked_by(other.id):
		return Relationship.BLOCKED_BY_CANDIDATE
	if other.id in viewer.friends:
		return Relationship.FRIEND
	if outgoing_open:
		return Relationship.PENDING_OUTGOING
	if incoming_open:
		return Relationship.PENDING_INCOMING
	return Relationship.NONE


def is_candidate(viewer: User, candidate: User) -> bool:
	"""Whether `candidate` may be offered to `viewer` as someone to befriend."""
	if candidate.id == viewer.id:
		return False
	if candidate.id in viewer.friends:
		return False
	return not is_blocked_either_way(viewer, candidate)


def matches_search(display_name: str, search_text: Optional[str]) -> bool:
	if not search_text:
		return True
	return search_text.strip().lower() in display_name.lower()

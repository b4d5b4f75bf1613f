"""Live read-models backing the candidate, friends and incoming-request screens.

Every view owns one or more store watches. Watch deliveries update the view's
inputs and rebuild its rows under a per-view lock, so subscribers of the view's
`ReadModel` receive complete lists in commit order.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Set, TypeVar

from roll.domain.common.fanout import gather_bounded
from roll.domain.social import policy
from roll.domain.social.models import FIELD_FRIENDS, FRIEND_REQUESTS, USERS, FriendRequest, RequestStatus, User
from roll.domain.social.schemas import CandidateRow, FriendProfile, IncomingRequest
from roll.store.base import DocumentSnapshot, DocumentStore, Watch, where

logger = logging.getLogger(__name__)

T = TypeVar("T")

Subscriber = Callable[[T], Awaitable[None]]


class ReadModel(Generic[T]):
	"""Observable latest value; subscribers are awaited in publish order."""

	def __init__(self, name: str, initial: T) -> None:
		self.name = name
		self._value = initial
		self._version = 0
		self._subscribers: List[Subscriber] = []
		self._ready = asyncio.Event()

	@property
	def value(self) -> T:
		return self._value

	@property
	def version(self) -> int:
		return self._version

	@property
	def ready(self) -> bool:
		return self._ready.is_set()

	def subscribe(self, callback: Subscriber) -> Callable[[], None]:
		self._subscribers.append(callback)

		def _unsubscribe() -> None:
			if callback in self._subscribers:
				self._subscribers.remove(callback)

		return _unsubscribe

	async def publish(self, value: T) -> None:
		self._value = value
		self._version += 1
		self._ready.set()
		for callback in list(self._subscribers):
			try:
				await callback(value)
			except Exception:
				logger.exception("Subscriber of %s failed", self.name)

	async def updates(self) -> AsyncIterator[T]:
		"""Yield every published value from now on."""
		queue: asyncio.Queue = asyncio.Queue()

		async def _enqueue(value: T) -> None:
			queue.put_nowait(value)

		unsubscribe = self.subscribe(_enqueue)
		try:
			if self.ready:
				yield self._value
			while True:
				yield await queue.get()
		finally:
			unsubscribe()


class LiveView(abc.ABC, Generic[T]):
	"""Common lifecycle for views driven by store watches."""

	def __init__(self, store: DocumentStore, viewer_id: str, name: str, initial: T) -> None:
		self.store = store
		self.viewer_id = str(viewer_id)
		self.model: ReadModel[T] = ReadModel(f"{name}:{viewer_id}", initial)
		self._watches: List[Watch] = []
		self._lock = asyncio.Lock()
		self._on_cancel: List[Callable[["LiveView"], None]] = []

	@abc.abstractmethod
	def _open_watches(self) -> List[Watch]:
		"""Open the store watches that feed this view."""

	def start(self) -> "LiveView[T]":
		self._watches = self._open_watches()
		return self

	@property
	def active(self) -> bool:
		return any(watch.active for watch in self._watches)

	@property
	def value(self) -> T:
		return self.model.value

	def subscribe(self, callback: Subscriber) -> Callable[[], None]:
		return self.model.subscribe(callback)

	def on_cancel(self, hook: Callable[["LiveView"], None]) -> None:
		self._on_cancel.append(hook)

	def cancel(self) -> None:
		for watch in self._watches:
			watch.cancel()
		self._watches = []
		hooks, self._on_cancel = self._on_cancel, []
		for hook in hooks:
			hook(self)


class CandidatesView(LiveView[List[CandidateRow]]):
	"""Users the viewer may befriend, re-filtered on every change."""

	def __init__(self, store: DocumentStore, viewer_id: str, *, search_text: Optional[str] = None) -> None:
		super().__init__(store, viewer_id, "candidates", [])
		self._search_text = search_text
		self._viewer: Optional[User] = None
		self._users: Optional[List[User]] = None
		self._outgoing: Optional[Set[str]] = None

	def _open_watches(self) -> List[Watch]:
		return [
			self.store.watch_document(USERS, self.viewer_id, self._on_viewer),
			self.store.watch_query(USERS, [], self._on_users),
			self.store.watch_query(
				FRIEND_REQUESTS,
				[where("from", "==", self.viewer_id), where("status", "==", RequestStatus.PENDING.value)],
				self._on_outgoing,
			),
		]

	async def _on_viewer(self, snapshot: DocumentSnapshot) -> None:
		if not snapshot.exists:
			logger.warning("Viewer %s disappeared while listing candidates", self.viewer_id)
		self._viewer = User.from_snapshot(snapshot) if snapshot.exists else None
		await self._refresh()

	async def _on_users(self, snapshots: Sequence[DocumentSnapshot]) -> None:
		self._users = [User.from_snapshot(snapshot) for snapshot in snapshots]
		await self._refresh()

	async def _on_outgoing(self, snapshots: Sequence[DocumentSnapshot]) -> None:
		self._outgoing = {str(snapshot.get("to")) for snapshot in snapshots}
		await self._refresh()

	async def mark_request_sent(self, user_id: str, sent: bool) -> None:
		"""Flip the flag for one candidate after a confirmed write."""
		if self._outgoing is None:
			self._outgoing = set()
		if sent:
			self._outgoing.add(str(user_id))
		else:
			self._outgoing.discard(str(user_id))
		await self._refresh()

	async def set_search_text(self, search_text: Optional[str]) -> None:
		self._search_text = search_text
		await self._refresh()

	def build_rows(self) -> List[CandidateRow]:
		viewer = self._viewer
		if viewer is None or self._users is None:
			return []
		outgoing = self._outgoing or set()
		return [
			CandidateRow(
				id=user.id,
				display_name=user.display_name,
				profile_image=user.profile_image,
				request_sent=user.id in outgoing,
			)
			for user in self._users
			if policy.is_candidate(viewer, user) and policy.matches_search(user.display_name, self._search_text)
		]

	async def _refresh(self) -> None:
		async with self._lock:
			if self._viewer is None:
				if self.model.ready:
					await self.model.publish([])
				return
			if self._users is None or self._outgoing is None:
				return
			await self.model.publish(self.build_rows())


async def _load_profile(store: DocumentStore, user_id: str) -> Optional[User]:
	snapshot = await store.get(USERS, user_id)
	if not snapshot.exists:
		logger.warning("User %s referenced but missing", user_id)
		return None
	return User.from_snapshot(snapshot)


class FriendsView(LiveView[List[FriendProfile]]):
	"""Profiles of the viewer's friends, hydrated on every friends change."""

	def __init__(self, store: DocumentStore, viewer_id: str) -> None:
		super().__init__(store, viewer_id, "friends", [])

	def _open_watches(self) -> List[Watch]:
		return [self.store.watch_document(USERS, self.viewer_id, self._on_viewer)]

	async def _on_viewer(self, snapshot: DocumentSnapshot) -> None:
		raw = snapshot.get(FIELD_FRIENDS) or []
		friend_ids: List[str] = []
		for item in raw:
			if str(item) not in friend_ids:
				friend_ids.append(str(item))
		async with self._lock:
			profiles = await gather_bounded(friend_ids, lambda fid: _load_profile(self.store, fid))
			rows = [
				FriendProfile(id=profile.id, display_name=profile.display_name, profile_image=profile.profile_image)
				for profile in profiles
				if profile is not None
			]
			await self.model.publish(rows)


class IncomingRequestsView(LiveView[List[IncomingRequest]]):
	"""Pending requests addressed to the viewer, newest first, with sender details."""

	def __init__(self, store: DocumentStore, viewer_id: str) -> None:
		super().__init__(store, viewer_id, "incoming_requests", [])

	def _open_watches(self) -> List[Watch]:
		return [
			self.store.watch_query(
				FRIEND_REQUESTS,
				[where("to", "==", self.viewer_id), where("status", "==", RequestStatus.PENDING.value)],
				self._on_requests,
				order_by="timestamp",
				descending=True,
			)
		]

	async def _on_requests(self, snapshots: Sequence[DocumentSnapshot]) -> None:
		requests = [FriendRequest.from_snapshot(snapshot) for snapshot in snapshots]
		async with self._lock:
			senders: Dict[str, Optional[User]] = {}
			sender_ids = list(dict.fromkeys(request.from_user_id for request in requests))
			for sender_id, profile in zip(
				sender_ids,
				await gather_bounded(sender_ids, lambda uid: _load_profile(self.store, uid)),
			):
				senders[sender_id] = profile
			rows: List[IncomingRequest] = []
			for request in requests:
				sender = senders.get(request.from_user_id)
				if sender is None:
					continue
				rows.append(
					IncomingRequest(
						id=request.id,
						from_user_id=request.from_user_id,
						to_user_id=request.to_user_id,
						status=request.status.value,
						created_at=request.created_at,
						display_name=sender.display_name,
						profile_image=sender.profile_image,
					)
				)
			await self.model.publish(rows)

"""Relationship manager: friend requests, friendships and blocks."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Set, TypeVar, Union

from roll.domain.social import audit, policy
from roll.domain.social.exceptions import (
	RequestForbidden,
	RequestGone,
	RequestNotFound,
	SocialError,
	UnsupportedTransition,
)
from roll.domain.social.models import (
	FIELD_BLOCKED,
	FIELD_BLOCKED_BY,
	FIELD_FRIENDS,
	FRIEND_REQUESTS,
	USERS,
	Decision,
	FriendRequest,
	Relationship,
	RequestStatus,
)
from roll.domain.social.read_models import CandidatesView, FriendsView, IncomingRequestsView, LiveView, Subscriber
from roll.obs import metrics as obs_metrics
from roll.obs.logging import bind_context, reset_context
from roll.store.base import SERVER_TIMESTAMP, DocumentStore, Transaction, array_remove, array_union

logger = logging.getLogger(__name__)

V = TypeVar("V", bound=LiveView)


@contextmanager
def _operation(name: str, user_id: str, target_id: Optional[str] = None) -> Iterator[None]:
	tokens = bind_context(operation=name, user_id=user_id, target_id=target_id)
	try:
		yield
	finally:
		reset_context(tokens)


class RelationshipManager:
	"""Maintains the social graph for users acting through a UI layer.

	Every operation takes the acting user's id explicitly. Writes that touch more
	than one document run in a store transaction; live views are plain
	`LiveView` objects that the caller must cancel.
	"""

	def __init__(self, store: DocumentStore) -> None:
		self.store = store
		self._candidate_views: Dict[str, Set[CandidatesView]] = {}
		self._views: Set[LiveView] = set()

	# --- read-models ---
	async def list_candidates(
		self,
		viewer_id: str,
		callback: Optional[Subscriber] = None,
		*,
		search_text: Optional[str] = None,
	) -> CandidatesView:
		viewer_id = str(viewer_id)
		await policy.load_user(self.store, viewer_id)
		view = CandidatesView(self.store, viewer_id, search_text=search_text)
		if callback is not None:
			view.subscribe(callback)
		self._candidate_views.setdefault(viewer_id, set()).add(view)
		return self._track(view)

	async def friends(self, viewer_id: str, callback: Optional[Subscriber] = None) -> FriendsView:
		await policy.load_user(self.store, str(viewer_id))
		view = FriendsView(self.store, str(viewer_id))
		if callback is not None:
			view.subscribe(callback)
		return self._track(view)

	async def incoming_requests(self, viewer_id: str, callback: Optional[Subscriber] = None) -> IncomingRequestsView:
		await policy.load_user(self.store, str(viewer_id))
		view = IncomingRequestsView(self.store, str(viewer_id))
		if callback is not None:
			view.subscribe(callback)
		return self._track(view)

	def _track(self, view: V) -> V:
		self._views.add(view)
		view.on_cancel(self._forget_view)
		view.start()
		return view

	def _forget_view(self, view: LiveView) -> None:
		self._views.discard(view)
		views = self._candidate_views.get(view.viewer_id)
		if not views:
			return
		views.discard(view)  # type: ignore[arg-type]
		if not views:
			self._candidate_views.pop(view.viewer_id, None)

	async def _mark_request_sent(self, from_id: str, to_id: str, sent: bool) -> None:
		for view in list(self._candidate_views.get(from_id, ())):
			await view.mark_request_sent(to_id, sent)

	# --- requests ---
	async def send_friend_request(self, from_id: str, to_id: str) -> FriendRequest:
		from_id, to_id = str(from_id), str(to_id)
		policy.guard_not_self(from_id, to_id)
		with _operation("send_request", from_id, to_id):
			try:
				sender, recipient = await policy.load_users(self.store, from_id, to_id)
				await policy.ensure_no_open_request(self.store, from_id, to_id)
				policy.ensure_not_already_friends(sender, recipient)
				policy.ensure_not_blocked(sender, recipient)
			except SocialError as exc:
				audit.inc_request_reject(exc.reason)
				raise
			request_id = await self.store.add(
				FRIEND_REQUESTS,
				{
					"from": from_id,
					"to": to_id,
					"status": RequestStatus.PENDING.value,
					"timestamp": SERVER_TIMESTAMP,
				},
			)
			request = FriendRequest.from_snapshot(await self.store.get(FRIEND_REQUESTS, request_id))
			audit.inc_request_sent("sent")
			await audit.log_request_event(
				"sent",
				{"request_id": request.id, "from": from_id, "to": to_id, "status": request.status.value},
			)
			await self._mark_request_sent(from_id, to_id, True)
			logger.info("Friend request %s sent", request.id)
			return request

	async def unsend_friend_request(self, from_id: str, to_id: str) -> int:
		"""Delete every open request from `from_id` to `to_id`; returns how many."""
		from_id, to_id = str(from_id), str(to_id)
		policy.guard_not_self(from_id, to_id)
		with _operation("unsend_request", from_id, to_id):
			requests = await policy.get_open_requests(self.store, from_id, to_id)
			if requests:
				batch = self.store.batch()
				for request in requests:
					batch.delete(FRIEND_REQUESTS, request.id)
				await batch.commit()
				obs_metrics.inc_request_unsent(len(requests))
				for request in requests:
					await audit.log_request_event("unsent", {"request_id": request.id, "from": from_id, "to": to_id})
			await self._mark_request_sent(from_id, to_id, False)
			return len(requests)

	async def respond_to_request(
		self,
		request_id: str,
		decision: Union[Decision, str],
		from_id: str,
		to_id: str,
	) -> FriendRequest:
		decision = Decision(decision)
		request_id, from_id, to_id = str(request_id), str(from_id), str(to_id)

		async def _respond(txn: Transaction) -> FriendRequest:
			snapshot = await txn.get(FRIEND_REQUESTS, request_id)
			if not snapshot.exists:
				raise RequestNotFound()
			request = FriendRequest.from_snapshot(snapshot)
			if request.from_user_id != from_id or request.to_user_id != to_id:
				raise RequestForbidden("pair_mismatch")
			if not request.is_open:
				raise RequestGone("not_pending")
			if decision is Decision.ACCEPT:
				sender, recipient = await policy.load_users(txn, from_id, to_id)
				policy.ensure_not_blocked(sender, recipient)
				txn.update(USERS, from_id, {FIELD_FRIENDS: array_union(to_id)})
				txn.update(USERS, to_id, {FIELD_FRIENDS: array_union(from_id)})
			txn.update(FRIEND_REQUESTS, request_id, {"status": decision.status.value})
			request.status = decision.status
			return request

		with _operation("respond_request", to_id, from_id):
			try:
				request = await self.store.run_transaction(_respond)
			except SocialError as exc:
				audit.inc_request_reject(exc.reason)
				raise
			audit.inc_response(decision.value)
			await audit.log_request_event(
				decision.status.value,
				{"request_id": request_id, "from": from_id, "to": to_id, "status": request.status.value},
			)
			if decision is Decision.ACCEPT:
				await audit.log_friend_event("accepted", {"user_id": from_id, "friend_id": to_id})
			logger.info("Friend request %s %s", request_id, request.status.value)
			return request

	# --- relationships ---
	async def unfriend(self, viewer_id: str, other_id: str) -> bool:
		"""Remove the friendship edge on both sides. Returns False when nothing changed."""
		viewer_id, other_id = str(viewer_id), str(other_id)
		policy.guard_not_self(viewer_id, other_id)

		async def _unfriend(txn: Transaction) -> bool:
			viewer, other = await policy.load_users(txn, viewer_id, other_id)
			changed = False
			if other.id in viewer.friends:
				txn.update(USERS, viewer.id, {FIELD_FRIENDS: array_remove(other.id)})
				changed = True
			if viewer.id in other.friends:
				txn.update(USERS, other.id, {FIELD_FRIENDS: array_remove(viewer.id)})
				changed = True
			return changed

		with _operation("unfriend", viewer_id, other_id):
			changed = await self.store.run_transaction(_unfriend)
			obs_metrics.inc_unfriend("removed" if changed else "noop")
			if changed:
				await audit.log_friend_event("removed", {"user_id": viewer_id, "friend_id": other_id})
			return changed

	async def block(self, viewer_id: str, target_id: str) -> bool:
		"""Block `target_id` and drop any friendship, in one transaction."""
		viewer_id, target_id = str(viewer_id), str(target_id)
		policy.guard_not_self(viewer_id, target_id)

		async def _block(txn: Transaction) -> bool:
			viewer, target = await policy.load_users(txn, viewer_id, target_id)
			viewer_fields = {}
			if not viewer.has_blocked(target.id):
				viewer_fields[FIELD_BLOCKED] = array_union(target.id)
			if target.id in viewer.friends:
				viewer_fields[FIELD_FRIENDS] = array_remove(target.id)
			target_fields = {}
			if not target.is_blocked_by(viewer.id):
				target_fields[FIELD_BLOCKED_BY] = array_union(viewer.id)
			if viewer.id in target.friends:
				target_fields[FIELD_FRIENDS] = array_remove(viewer.id)
			txn.update(USERS, viewer.id, viewer_fields)
			txn.update(USERS, target.id, target_fields)
			return bool(viewer_fields or target_fields)

		with _operation("block", viewer_id, target_id):
			changed = await self.store.run_transaction(_block)
			audit.inc_block("blocked" if changed else "noop")
			if changed:
				await audit.log_friend_event("blocked", {"user_id": viewer_id, "friend_id": target_id})
				logger.info("User blocked")
			return changed

	async def unblock(self, viewer_id: str, target_id: str) -> None:
		"""Blocks are permanent; there is no transition out of a blocked state."""
		audit.inc_block("unblock_refused")
		raise UnsupportedTransition("unblock")

	async def relationship(self, viewer_id: str, other_id: str) -> Relationship:
		viewer_id, other_id = str(viewer_id), str(other_id)
		if viewer_id == other_id:
			return Relationship.SELF
		viewer, other = await policy.load_users(self.store, viewer_id, other_id)
		outgoing = await policy.get_open_request(self.store, viewer_id, other_id)
		incoming = await policy.get_open_request(self.store, other_id, viewer_id)
		return policy.derive_relationship(
			viewer,
			other,
			outgoing_open=outgoing is not None,
			incoming_open=incoming is not None,
		)

	def close(self) -> None:
		for view in list(self._views):
			view.cancel()
		self._views.clear()
		self._candidate_views.clear()

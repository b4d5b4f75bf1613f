"""User registration, contacts and profile lookups."""

from __future__ import annotations

import logging
import re
from typing import Dict, Mapping, Optional

from pydantic import ValidationError

from roll.domain.identity.schemas import RegisterRequest, UserProfile
from roll.domain.social.models import DEFAULT_DISPLAY_NAME, FIELD_BLOCKED, FIELD_BLOCKED_BY, FIELD_FRIENDS, USERS
from roll.obs import metrics as obs_metrics
from roll.store.base import DocumentStore, new_document_id

logger = logging.getLogger(__name__)

_PHONE_STRIP_RE = re.compile(r"[\s().-]+")


class IdentityServiceError(Exception):
	"""Raised for registration and profile issues."""

	def __init__(self, reason: str) -> None:
		super().__init__(reason)
		self.reason = reason


class ProfileNotFound(IdentityServiceError):
	def __init__(self) -> None:
		super().__init__("profile_not_found")


def normalise_phone(raw: str) -> str:
	return _PHONE_STRIP_RE.sub("", (raw or "").strip())


class IdentityService:
	def __init__(self, store: DocumentStore) -> None:
		self.store = store

	async def register_user(self, display_name: str, phone_number: str, *, user_id: Optional[str] = None) -> str:
		"""Create a user document with empty relationship sets and return its id."""
		try:
			payload = RegisterRequest(display_name=(display_name or "").strip(), phone_number=normalise_phone(phone_number))
		except ValidationError as exc:
			field = exc.errors()[0]["loc"][0] if exc.errors() else "payload"
			raise IdentityServiceError(f"{field}_invalid") from exc
		user_id = str(user_id or new_document_id())
		await self.store.set(
			USERS,
			user_id,
			{
				"displayName": payload.display_name or DEFAULT_DISPLAY_NAME,
				"profileImage": "",
				"phoneNumber": payload.phone_number,
				"contacts": {},
				FIELD_FRIENDS: [],
				FIELD_BLOCKED: [],
				FIELD_BLOCKED_BY: [],
			},
		)
		obs_metrics.inc_user_registered()
		logger.info("Registered user %s", user_id)
		return user_id

	async def update_contacts(self, user_id: str, contacts: Mapping[str, str]) -> Dict[str, str]:
		"""Merge selected contacts (contact id -> phone) into the user's contacts."""
		snapshot = await self.store.get(USERS, str(user_id))
		if not snapshot.exists:
			raise ProfileNotFound()
		merged = dict(snapshot.get("contacts") or {})
		merged.update({str(key): normalise_phone(value) for key, value in contacts.items()})
		await self.store.update(USERS, str(user_id), {"contacts": merged})
		return merged

	async def update_profile_image(self, user_id: str, url: str) -> None:
		snapshot = await self.store.get(USERS, str(user_id))
		if not snapshot.exists:
			raise ProfileNotFound()
		await self.store.update(USERS, str(user_id), {"profileImage": url})

	async def get_profile(self, user_id: str) -> UserProfile:
		snapshot = await self.store.get(USERS, str(user_id))
		if not snapshot.exists:
			raise ProfileNotFound()
		return UserProfile(
			id=snapshot.id,
			display_name=snapshot.get("displayName") or DEFAULT_DISPLAY_NAME,
			profile_image=snapshot.get("profileImage") or "",
			phone_number=snapshot.get("phoneNumber") or "",
			contacts=dict(snapshot.get("contacts") or {}),
			friends=list(snapshot.get(FIELD_FRIENDS) or []),
			blocked=list(snapshot.get(FIELD_BLOCKED) or []),
		)

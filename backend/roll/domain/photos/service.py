"""Camera-roll upload: push assets to the object store and record them per user."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import ulid

from roll.obs import metrics as obs_metrics
from roll.settings import settings
from roll.store.base import DocumentStore, Transaction, array_union
from roll.store.exceptions import StoreError
from roll.store.objects import ObjectStore

logger = logging.getLogger(__name__)

PHOTOS = "photos"
PHOTO_CONTENT_TYPE = "image/jpeg"


@dataclass(slots=True)
class PhotoAsset:
	data: bytes
	created_at: datetime
	latitude: Optional[float] = None
	longitude: Optional[float] = None

	def __post_init__(self) -> None:
		# Naive capture times are taken as UTC
		if self.created_at.tzinfo is None:
			self.created_at = self.created_at.replace(tzinfo=timezone.utc)
		else:
			self.created_at = self.created_at.astimezone(timezone.utc)

	def to_entry(self, url: str) -> Dict[str, Any]:
		entry: Dict[str, Any] = {"URL": url, "timestamp": self.created_at}
		if self.latitude is not None and self.longitude is not None:
			entry["location"] = {"latitude": self.latitude, "longitude": self.longitude}
		return entry


@dataclass(slots=True)
class UploadReport:
	uploaded: int = 0
	failed: int = 0
	urls: List[str] = field(default_factory=list)

	@property
	def total(self) -> int:
		return self.uploaded + self.failed


def build_photo_key(user_id: str) -> str:
	return f"{PHOTOS}/{user_id}/{ulid.new()}.jpg"


class PhotoUploader:
	def __init__(self, store: DocumentStore, objects: ObjectStore, *, concurrency: Optional[int] = None) -> None:
		self.store = store
		self.objects = objects
		self._concurrency = max(1, concurrency or settings.upload_concurrency)

	async def upload_camera_roll(self, user_id: str, assets: Sequence[PhotoAsset]) -> UploadReport:
		"""Upload every asset with bounded concurrency and join into one report.

		A failing asset is logged and counted; the remaining uploads continue.
		"""
		user_id = str(user_id)
		semaphore = asyncio.Semaphore(self._concurrency)

		async def _bounded(asset: PhotoAsset) -> Optional[str]:
			async with semaphore:
				return await self._upload_one(user_id, asset)

		urls = await asyncio.gather(*(_bounded(asset) for asset in assets))
		report = UploadReport()
		for url in urls:
			if url is None:
				report.failed += 1
			else:
				report.uploaded += 1
				report.urls.append(url)
		logger.info("Camera roll upload finished: %s uploaded, %s failed", report.uploaded, report.failed)
		return report

	async def _upload_one(self, user_id: str, asset: PhotoAsset) -> Optional[str]:
		key = build_photo_key(user_id)
		try:
			await self.objects.put(key, asset.data, content_type=PHOTO_CONTENT_TYPE)
			url = await self.objects.url_for(key)
			await self._record(user_id, asset.to_entry(url), asset.created_at)
		except StoreError as exc:
			obs_metrics.inc_photo_upload("failed")
			logger.warning("Photo upload %s failed: %s", key, exc.reason)
			return None
		obs_metrics.inc_photo_upload("uploaded")
		return url

	async def _record(self, user_id: str, entry: Dict[str, Any], taken_at: datetime) -> None:
		async def _append(txn: Transaction) -> None:
			snapshot = await txn.get(PHOTOS, user_id)
			earliest = snapshot.get("earliestTimestamp")
			latest = snapshot.get("latestTimestamp")
			txn.set(
				PHOTOS,
				user_id,
				{
					"cameraRoll": array_union(entry),
					"earliestTimestamp": taken_at if earliest is None else min(earliest, taken_at),
					"latestTimestamp": taken_at if latest is None else max(latest, taken_at),
				},
				merge=True,
			)

		await self.store.run_transaction(_append)

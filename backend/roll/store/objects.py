"""Blob storage for uploaded photos: an in-memory store and an S3 store."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from roll.settings import settings
from roll.store.exceptions import ObjectStoreError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/heic", "image/webp"}
MAX_OBJECT_BYTES = 50 * 1024 * 1024


@dataclass(slots=True)
class StoredObject:
	key: str
	data: bytes
	content_type: str


def validate_upload(key: str, data: bytes, content_type: str) -> None:
	if not key or key.startswith("/"):
		raise ObjectStoreError("key_invalid")
	if not data:
		raise ObjectStoreError("size_invalid")
	if len(data) > MAX_OBJECT_BYTES:
		raise ObjectStoreError("size_exceeded")
	if content_type.lower() not in ALLOWED_CONTENT_TYPES:
		raise ObjectStoreError("content_type_invalid")


class ObjectStore(abc.ABC):
	@abc.abstractmethod
	async def put(self, key: str, data: bytes, *, content_type: str) -> None:
		...

	@abc.abstractmethod
	async def url_for(self, key: str) -> str:
		...


class MemoryObjectStore(ObjectStore):
	"""Keeps objects in a dict and serves them under `object_base_url`."""

	def __init__(self, base_url: Optional[str] = None) -> None:
		self._base_url = (base_url or settings.object_base_url).rstrip("/")
		self._lock = asyncio.Lock()
		self.objects: Dict[str, StoredObject] = {}

	async def put(self, key: str, data: bytes, *, content_type: str) -> None:
		validate_upload(key, data, content_type)
		async with self._lock:
			self.objects[key] = StoredObject(key=key, data=bytes(data), content_type=content_type)

	async def url_for(self, key: str) -> str:
		async with self._lock:
			if key not in self.objects:
				raise ObjectStoreError("not_found")
		return f"{self._base_url}/{key}"


class S3ObjectStore(ObjectStore):
	"""S3 bucket access through boto3, run off the event loop."""

	def __init__(self, bucket: Optional[str] = None, *, region: Optional[str] = None, client=None) -> None:
		self._bucket = bucket or settings.s3_bucket
		if not self._bucket:
			raise ObjectStoreError("bucket_not_configured")
		self._client = client or boto3.client("s3", region_name=region or settings.s3_region)

	async def put(self, key: str, data: bytes, *, content_type: str) -> None:
		validate_upload(key, data, content_type)
		try:
			await asyncio.to_thread(
				self._client.put_object,
				Bucket=self._bucket,
				Key=key,
				Body=data,
				ContentType=content_type,
			)
		except (BotoCoreError, ClientError) as exc:
			logger.error("S3 upload failed for %s: %s", key, exc)
			raise ObjectStoreError("upload_failed") from exc

	async def url_for(self, key: str) -> str:
		try:
			return await asyncio.to_thread(
				self._client.generate_presigned_url,
				"get_object",
				Params={"Bucket": self._bucket, "Key": key},
				ExpiresIn=settings.s3_url_expires_seconds,
			)
		except (BotoCoreError, ClientError) as exc:
			raise ObjectStoreError("url_failed") from exc

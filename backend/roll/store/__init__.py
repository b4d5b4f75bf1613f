"""Document and object store backends."""

from __future__ import annotations

from typing import Optional

from roll.settings import settings
from roll.store.base import (  # noqa: F401
	SERVER_TIMESTAMP,
	DocumentSnapshot,
	DocumentStore,
	Filter,
	Transaction,
	Watch,
	array_remove,
	array_union,
	where,
)
from roll.store.exceptions import (  # noqa: F401
	DocumentNotFound,
	ObjectStoreError,
	StoreError,
	StoreUnavailable,
	TransactionAborted,
)
from roll.store.memory import MemoryDocumentStore
from roll.store.objects import MemoryObjectStore, ObjectStore, S3ObjectStore


def create_document_store(backend: Optional[str] = None) -> DocumentStore:
	"""Build the configured document store backend."""
	choice = (backend or settings.store_backend).lower()
	if choice == "memory":
		return MemoryDocumentStore()
	if choice == "redis":
		from roll.store.redis_store import RedisDocumentStore

		return RedisDocumentStore()
	raise ValueError(f"unknown store backend: {choice}")


def create_object_store(backend: Optional[str] = None) -> ObjectStore:
	choice = (backend or settings.object_store_backend).lower()
	if choice == "memory":
		return MemoryObjectStore()
	if choice == "s3":
		return S3ObjectStore()
	raise ValueError(f"unknown object store backend: {choice}")

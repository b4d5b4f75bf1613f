"""Redis-backed document store.

Each document is a JSON string under `{prefix}:doc:{collection}:{id}`; a sorted set
`{prefix}:idx:{collection}` keeps ids in arrival order for collection scans. Commits
run inside MULTI/EXEC with WATCH on every key read beforehand, so a concurrent writer
turns the EXEC into a WatchError and the transaction is retried. Each commit publishes
the changed ids on `{prefix}:changes:{collection}`; watches re-read on those messages.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from redis.asyncio.client import Pipeline, PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from roll.infra.redis import redis_client
from roll.settings import settings
from roll.store.base import (
	DocKey,
	DocumentSnapshot,
	DocumentStore,
	Filter,
	QuerySpec,
	Transaction,
	Watch,
	WriteOp,
	apply_writes,
	run_query,
)
from roll.store.exceptions import StoreUnavailable, TransactionAborted, TransactionConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TS_TAG = "$ts"


def _encode_value(value: Any) -> Any:
	if isinstance(value, datetime):
		return {_TS_TAG: value.isoformat()}
	if isinstance(value, dict):
		return {k: _encode_value(v) for k, v in value.items()}
	if isinstance(value, (list, tuple)):
		return [_encode_value(v) for v in value]
	return value


def _decode_value(value: Any) -> Any:
	if isinstance(value, dict):
		if set(value) == {_TS_TAG}:
			return datetime.fromisoformat(value[_TS_TAG])
		return {k: _decode_value(v) for k, v in value.items()}
	if isinstance(value, list):
		return [_decode_value(v) for v in value]
	return value


def encode_document(data: Dict[str, Any]) -> str:
	return json.dumps(_encode_value(data), separators=(",", ":"))


def decode_document(raw: Optional[str]) -> Optional[Dict[str, Any]]:
	if raw is None:
		return None
	return _decode_value(json.loads(raw))


@asynccontextmanager
async def _redis_io() -> AsyncIterator[None]:
	try:
		yield
	except (RedisConnectionError, RedisTimeoutError) as exc:
		raise StoreUnavailable(str(exc)) from exc


class _RedisTransaction(Transaction):
	def __init__(self, store: "RedisDocumentStore", pipe: Pipeline) -> None:
		super().__init__()
		self._store = store
		self._pipe = pipe
		self.snapshots: Dict[DocKey, Optional[Dict[str, Any]]] = {}

	async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
		key = (collection, doc_id)
		if key not in self.snapshots:
			name = self._store.doc_key(collection, doc_id)
			async with _redis_io():
				await self._pipe.watch(name)
				raw = await self._pipe.get(name)
			self.snapshots[key] = decode_document(raw)
		return DocumentSnapshot(collection, doc_id, copy.deepcopy(self.snapshots[key]))


class RedisDocumentStore(DocumentStore):
	backend = "redis"

	def __init__(self, client: Any = None, *, prefix: Optional[str] = None) -> None:
		super().__init__()
		self._client = client if client is not None else redis_client
		self._prefix = prefix or settings.store_key_prefix
		self._pubsub: Optional[PubSub] = None
		self._listener: Optional[asyncio.Task] = None

	# --- key layout ---
	def doc_key(self, collection: str, doc_id: str) -> str:
		return f"{self._prefix}:doc:{collection}:{doc_id}"

	def index_key(self, collection: str) -> str:
		return f"{self._prefix}:idx:{collection}"

	def _channel_prefix(self) -> str:
		return f"{self._prefix}:changes:"

	def channel(self, collection: str) -> str:
		return f"{self._channel_prefix()}{collection}"

	# --- reads ---
	async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
		async with _redis_io():
			raw = await self._client.get(self.doc_key(collection, doc_id))
		return DocumentSnapshot(collection, doc_id, decode_document(raw))

	async def query(
		self,
		collection: str,
		filters: Sequence[Filter] = (),
		*,
		order_by: Optional[str] = None,
		descending: bool = False,
		limit: Optional[int] = None,
	) -> List[DocumentSnapshot]:
		spec = QuerySpec(collection, tuple(filters), order_by, descending, limit)
		async with _redis_io():
			ids = await self._client.zrange(self.index_key(collection), 0, -1)
			if not ids:
				return []
			raws = await self._client.mget([self.doc_key(collection, doc_id) for doc_id in ids])
		items = [(doc_id, decode_document(raw)) for doc_id, raw in zip(ids, raws) if raw is not None]
		return run_query(spec, items)  # type: ignore[arg-type]

	# --- writes ---
	async def _commit_in(
		self,
		pipe: Pipeline,
		ops: List[WriteOp],
		known: Dict[DocKey, Optional[Dict[str, Any]]],
	) -> List[DocKey]:
		for op in ops:
			if op.needs_current and op.key not in known:
				name = self.doc_key(*op.key)
				await pipe.watch(name)
				known[op.key] = decode_document(await pipe.get(name))
		new_states = apply_writes(ops, known)
		pipe.multi()
		score = time.time()
		for (collection, doc_id), state in new_states.items():
			name = self.doc_key(collection, doc_id)
			if state is None:
				pipe.delete(name)
				pipe.zrem(self.index_key(collection), doc_id)
			else:
				pipe.set(name, encode_document(state))
				pipe.zadd(self.index_key(collection), {doc_id: score}, nx=True)
			pipe.publish(self.channel(collection), doc_id)
		await pipe.execute()
		return list(new_states)

	async def _commit_writes(self, ops: List[WriteOp]) -> None:
		attempts = max(1, settings.transaction_max_attempts)
		for _ in range(attempts):
			try:
				async with _redis_io():
					async with self._client.pipeline(transaction=True) as pipe:
						await self._commit_in(pipe, ops, {})
				return
			except WatchError:
				# Batches are unconditional; only the transform reads went stale
				continue
		raise TransactionAborted("batch_conflict")

	async def _attempt_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
		async with _redis_io():
			async with self._client.pipeline(transaction=True) as pipe:
				txn = _RedisTransaction(self, pipe)
				result = await fn(txn)
				try:
					if txn.ops:
						await self._commit_in(pipe, txn.ops, dict(txn.snapshots))
					else:
						await pipe.unwatch()
				except WatchError as exc:
					raise TransactionConflict("watched_key_changed") from exc
		return result

	# --- watches ---
	def _register_watch(self, watch: Watch, doc_key: Optional[DocKey], spec: Optional[QuerySpec]) -> None:
		super()._register_watch(watch, doc_key, spec)
		if self._listener is None or self._listener.done():
			self._listener = asyncio.create_task(self._listen(), name="redis-store-changes")

	async def _listen(self) -> None:
		pubsub = self._client.pubsub()
		self._pubsub = pubsub
		prefix = self._channel_prefix()
		await pubsub.psubscribe(f"{prefix}*")
		# Anything committed before the subscription landed is picked up by one re-read
		for watch, _, _ in list(self._watches):
			watch.trigger()
		while True:
			try:
				message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
			except (RedisConnectionError, RedisTimeoutError):
				logger.warning("Change feed connection lost, retrying")
				await asyncio.sleep(1.0)
				continue
			if not message or message.get("type") != "pmessage":
				continue
			channel = message["channel"]
			if isinstance(channel, bytes):
				channel = channel.decode()
			data = message["data"]
			if isinstance(data, bytes):
				data = data.decode()
			self._notify([(channel[len(prefix):], data)])

	async def close(self) -> None:
		await super().close()
		if self._listener is not None:
			self._listener.cancel()
			with suppress(asyncio.CancelledError):
				await self._listener
			self._listener = None
		if self._pubsub is not None:
			await self._pubsub.aclose()
			self._pubsub = None

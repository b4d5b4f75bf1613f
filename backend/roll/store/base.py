"""Document store contract shared by the memory and Redis backends.

Documents are plain dicts addressed by (collection, id). Writes are expressed as
`WriteOp` records so transactions and batches buffer them and the backend applies
them in one atomic step. Field values may carry transforms (`ArrayUnion`,
`ArrayRemove`, `SERVER_TIMESTAMP`) which are resolved against the stored value at
commit time.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

import ulid

from roll.obs import metrics as obs_metrics
from roll.settings import settings
from roll.store.exceptions import DocumentNotFound, TransactionAborted, TransactionConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

DocKey = Tuple[str, str]


@dataclass(frozen=True, slots=True)
class ArrayUnion:
	values: Tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class ArrayRemove:
	values: Tuple[Any, ...]


class _ServerTimestamp:
	def __repr__(self) -> str:
		return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def array_union(*values: Any) -> ArrayUnion:
	return ArrayUnion(tuple(values))


def array_remove(*values: Any) -> ArrayRemove:
	return ArrayRemove(tuple(values))


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def new_document_id() -> str:
	return str(ulid.new())


_OPERATORS = {"==", "!=", "<", "<=", ">", ">=", "array-contains", "in"}


@dataclass(frozen=True, slots=True)
class Filter:
	"""Single field predicate used by queries and query watches."""

	field: str
	op: str
	value: Any

	def __post_init__(self) -> None:
		if self.op not in _OPERATORS:
			raise ValueError(f"unsupported operator: {self.op}")

	def matches(self, data: Mapping[str, Any]) -> bool:
		if self.field not in data:
			return False
		current = data[self.field]
		if self.op == "==":
			return current == self.value
		if self.op == "!=":
			return current != self.value
		if self.op == "array-contains":
			return isinstance(current, list) and self.value in current
		if self.op == "in":
			return current in self.value
		try:
			if self.op == "<":
				return current < self.value
			if self.op == "<=":
				return current <= self.value
			if self.op == ">":
				return current > self.value
			return current >= self.value
		except TypeError:
			return False


def where(field_name: str, op: str, value: Any) -> Filter:
	return Filter(field_name, op, value)


@dataclass(slots=True)
class DocumentSnapshot:
	collection: str
	id: str
	data: Optional[Dict[str, Any]]

	@property
	def exists(self) -> bool:
		return self.data is not None

	def get(self, name: str, default: Any = None) -> Any:
		if self.data is None:
			return default
		return self.data.get(name, default)

	def to_dict(self) -> Dict[str, Any]:
		return dict(self.data or {})


@dataclass(frozen=True, slots=True)
class QuerySpec:
	collection: str
	filters: Tuple[Filter, ...] = ()
	order_by: Optional[str] = None
	descending: bool = False
	limit: Optional[int] = None

	def matches(self, data: Mapping[str, Any]) -> bool:
		return all(f.matches(data) for f in self.filters)


def run_query(spec: QuerySpec, documents: Iterable[Tuple[str, Dict[str, Any]]]) -> List[DocumentSnapshot]:
	"""Filter, order and limit an iterable of (id, data) pairs."""
	rows = [DocumentSnapshot(spec.collection, doc_id, data) for doc_id, data in documents if spec.matches(data)]
	if spec.order_by:
		key = spec.order_by
		present = [row for row in rows if key in row.data]  # type: ignore[operator]
		present.sort(key=lambda row: row.data[key], reverse=spec.descending)  # type: ignore[index]
		rows = present
	if spec.limit is not None:
		rows = rows[: spec.limit]
	return rows


def _resolve_value(value: Any, now: datetime, current: Any = None) -> Any:
	if value is SERVER_TIMESTAMP:
		return now
	if isinstance(value, ArrayUnion):
		base = list(current) if isinstance(current, list) else []
		for item in value.values:
			if item not in base:
				base.append(item)
		return base
	if isinstance(value, ArrayRemove):
		base = list(current) if isinstance(current, list) else []
		return [item for item in base if item not in value.values]
	if isinstance(value, dict):
		return {k: _resolve_value(v, now) for k, v in value.items()}
	return copy.deepcopy(value)


@dataclass(slots=True)
class WriteOp:
	kind: str  # "set" | "update" | "delete"
	collection: str
	doc_id: str
	data: Dict[str, Any] = field(default_factory=dict)
	merge: bool = False

	@property
	def key(self) -> DocKey:
		return (self.collection, self.doc_id)

	@property
	def needs_current(self) -> bool:
		return self.kind == "update" or (self.kind == "set" and self.merge)


def apply_write(current: Optional[Dict[str, Any]], op: WriteOp, now: datetime) -> Optional[Dict[str, Any]]:
	"""Return the document state after applying a single write."""
	if op.kind == "delete":
		return None
	if op.kind == "update":
		if current is None:
			raise DocumentNotFound(f"{op.collection}/{op.doc_id}")
		updated = copy.deepcopy(current)
		for name, value in op.data.items():
			updated[name] = _resolve_value(value, now, updated.get(name))
		return updated
	if op.kind == "set":
		if op.merge and current is not None:
			merged = copy.deepcopy(current)
			for name, value in op.data.items():
				merged[name] = _resolve_value(value, now, merged.get(name))
			return merged
		return {name: _resolve_value(value, now) for name, value in op.data.items()}
	raise ValueError(f"unknown write kind: {op.kind}")


def apply_writes(
	ops: Sequence[WriteOp],
	current: Mapping[DocKey, Optional[Dict[str, Any]]],
	now: Optional[datetime] = None,
) -> Dict[DocKey, Optional[Dict[str, Any]]]:
	"""Fold writes over the current states; later writes see earlier ones."""
	now = now or utcnow()
	working: Dict[DocKey, Optional[Dict[str, Any]]] = {}
	for op in ops:
		state = working[op.key] if op.key in working else current.get(op.key)
		working[op.key] = apply_write(state, op, now)
	return working


class WriteBuffer:
	"""Collects writes for an atomic commit."""

	def __init__(self) -> None:
		self.ops: List[WriteOp] = []

	def set(self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False) -> None:
		self.ops.append(WriteOp("set", collection, doc_id, dict(data), merge=merge))

	def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
		if not fields:
			return
		self.ops.append(WriteOp("update", collection, doc_id, dict(fields)))

	def delete(self, collection: str, doc_id: str) -> None:
		self.ops.append(WriteOp("delete", collection, doc_id))


class Transaction(WriteBuffer, abc.ABC):
	"""Snapshot reads plus buffered writes, committed only if the reads still hold."""

	@abc.abstractmethod
	async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
		...


class Batch(WriteBuffer):
	"""Unconditional multi-document write applied atomically on commit."""

	def __init__(self, store: "DocumentStore") -> None:
		super().__init__()
		self._store = store

	async def commit(self) -> None:
		if not self.ops:
			return
		await self._store._commit_writes(list(self.ops))


Callback = Callable[[Any], Awaitable[None]]


class Watch:
	"""Handle for a live subscription. Deliveries stop once `cancel()` is called."""

	def __init__(self, store: "DocumentStore", name: str, loader: Callable[[], Awaitable[Any]], callback: Callback) -> None:
		self.name = name
		self._store = store
		self._loader = loader
		self._callback = callback
		self._queue: asyncio.Queue[None] = asyncio.Queue()
		self._task: Optional[asyncio.Task] = None
		self._outstanding = 0
		self.last_error: Optional[BaseException] = None

	@property
	def active(self) -> bool:
		return self._task is not None and not self._task.done()

	@property
	def pending(self) -> int:
		return self._outstanding

	def start(self) -> None:
		obs_metrics.watch_started(self._store.backend)
		self._task = asyncio.create_task(self._run(), name=f"store-watch:{self.name}")
		self.trigger()

	def trigger(self) -> None:
		if self.active:
			self._outstanding += 1
			self._queue.put_nowait(None)

	def _done_one(self) -> None:
		self._outstanding -= 1
		self._queue.task_done()

	async def _run(self) -> None:
		while True:
			await self._queue.get()
			# Collapse bursts of notifications into one re-read of the current state
			while not self._queue.empty():
				self._queue.get_nowait()
				self._done_one()
			try:
				payload = await self._loader()
				await self._callback(payload)
				self.last_error = None
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				self.last_error = exc
				logger.exception("Watch %s delivery failed", self.name)
			finally:
				self._done_one()

	async def idle(self) -> None:
		"""Wait until every pending notification has been delivered."""
		if not self.active:
			return
		joined = asyncio.ensure_future(self._queue.join())
		try:
			await asyncio.wait({joined, self._task}, return_when=asyncio.FIRST_COMPLETED)  # type: ignore[arg-type]
		finally:
			joined.cancel()

	def cancel(self) -> None:
		if self._task is None or self._task.done():
			return
		self._task.cancel()
		obs_metrics.watch_stopped(self._store.backend)
		self._store._forget_watch(self)


class DocumentStore(abc.ABC):
	"""Abstract document database with transactions, batches and live watches."""

	backend: str = "abstract"

	def __init__(self) -> None:
		self._watches: List[Tuple[Watch, Optional[DocKey], Optional[QuerySpec]]] = []

	# --- reads ---
	@abc.abstractmethod
	async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
		...

	@abc.abstractmethod
	async def query(
		self,
		collection: str,
		filters: Sequence[Filter] = (),
		*,
		order_by: Optional[str] = None,
		descending: bool = False,
		limit: Optional[int] = None,
	) -> List[DocumentSnapshot]:
		...

	# --- writes ---
	@abc.abstractmethod
	async def _commit_writes(self, ops: List[WriteOp]) -> None:
		"""Apply unconditional writes atomically and notify watches."""

	@abc.abstractmethod
	async def _attempt_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
		"""Run one transaction attempt; raise TransactionConflict when reads went stale."""

	async def add(self, collection: str, data: Mapping[str, Any]) -> str:
		doc_id = new_document_id()
		await self._commit_writes([WriteOp("set", collection, doc_id, dict(data))])
		return doc_id

	async def set(self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False) -> None:
		await self._commit_writes([WriteOp("set", collection, doc_id, dict(data), merge=merge)])

	async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
		await self._commit_writes([WriteOp("update", collection, doc_id, dict(fields))])

	async def delete(self, collection: str, doc_id: str) -> None:
		await self._commit_writes([WriteOp("delete", collection, doc_id)])

	def batch(self) -> Batch:
		return Batch(self)

	async def run_transaction(
		self,
		fn: Callable[[Transaction], Awaitable[T]],
		*,
		max_attempts: Optional[int] = None,
	) -> T:
		attempts = max(1, max_attempts or settings.transaction_max_attempts)
		for attempt in range(1, attempts + 1):
			try:
				result = await self._attempt_transaction(fn)
			except TransactionConflict:
				obs_metrics.inc_transaction(self.backend, "conflict")
				logger.debug("Transaction conflict on attempt %s/%s", attempt, attempts)
				continue
			except Exception:
				obs_metrics.inc_transaction(self.backend, "failed")
				raise
			obs_metrics.inc_transaction(self.backend, "committed")
			return result
		raise TransactionAborted(f"gave_up_after_{attempts}_attempts")

	# --- watches ---
	def watch_document(self, collection: str, doc_id: str, callback: Callback) -> Watch:
		"""Deliver the document snapshot now and after every committed change."""

		async def _load() -> DocumentSnapshot:
			return await self.get(collection, doc_id)

		watch = Watch(self, f"{collection}/{doc_id}", _load, callback)
		self._register_watch(watch, (collection, doc_id), None)
		return watch

	def watch_query(
		self,
		collection: str,
		filters: Sequence[Filter],
		callback: Callback,
		*,
		order_by: Optional[str] = None,
		descending: bool = False,
	) -> Watch:
		"""Deliver the query result now and after every change to the collection."""
		spec = QuerySpec(collection, tuple(filters), order_by, descending)

		async def _load() -> List[DocumentSnapshot]:
			return await self.query(collection, spec.filters, order_by=order_by, descending=descending)

		watch = Watch(self, f"{collection}?{len(spec.filters)}", _load, callback)
		self._register_watch(watch, None, spec)
		return watch

	def _register_watch(self, watch: Watch, doc_key: Optional[DocKey], spec: Optional[QuerySpec]) -> None:
		self._watches.append((watch, doc_key, spec))
		watch.start()

	def _forget_watch(self, watch: Watch) -> None:
		self._watches = [entry for entry in self._watches if entry[0] is not watch]

	def _notify(self, changed: Iterable[DocKey]) -> None:
		changed_keys = set(changed)
		collections = {collection for collection, _ in changed_keys}
		for watch, doc_key, spec in list(self._watches):
			if doc_key is not None and doc_key in changed_keys:
				watch.trigger()
			elif spec is not None and spec.collection in collections:
				watch.trigger()

	@property
	def active_watches(self) -> int:
		return sum(1 for watch, _, _ in self._watches if watch.active)

	async def drain(self) -> None:
		"""Wait until all watches have delivered every pending notification."""
		while True:
			busy = [watch for watch, _, _ in self._watches if watch.active and watch.pending]
			if not busy:
				return
			await asyncio.gather(*(watch.idle() for watch in busy))

	async def close(self) -> None:
		watches = [watch for watch, _, _ in self._watches]
		for watch in watches:
			watch.cancel()
		tasks = [watch._task for watch in watches if watch._task is not None]
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
		self._watches.clear()

"""In-process document store used by tests and local development."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from roll.store.base import (
	DocKey,
	DocumentSnapshot,
	DocumentStore,
	Filter,
	QuerySpec,
	Transaction,
	WriteOp,
	apply_writes,
	run_query,
)
from roll.store.exceptions import TransactionConflict

T = TypeVar("T")


class _MemoryTransaction(Transaction):
	def __init__(self, store: "MemoryDocumentStore") -> None:
		super().__init__()
		self._store = store
		self.read_versions: Dict[DocKey, int] = {}

	async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
		key = (collection, doc_id)
		async with self._store._lock:
			version = self._store._versions.get(key, 0)
			data = copy.deepcopy(self._store._docs.get(key))
		# The first read pins the version the commit is validated against
		self.read_versions.setdefault(key, version)
		return DocumentSnapshot(collection, doc_id, data)


class MemoryDocumentStore(DocumentStore):
	"""Dict-backed store with per-document versions for optimistic transactions."""

	backend = "memory"

	def __init__(self) -> None:
		super().__init__()
		self._lock = asyncio.Lock()
		self._docs: Dict[DocKey, Dict[str, Any]] = {}
		self._versions: Dict[DocKey, int] = {}

	async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
		async with self._lock:
			data = copy.deepcopy(self._docs.get((collection, doc_id)))
		return DocumentSnapshot(collection, doc_id, data)

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
		async with self._lock:
			items = [(doc_id, copy.deepcopy(data)) for (col, doc_id), data in self._docs.items() if col == collection]
		return run_query(spec, items)

	def _apply_locked(self, ops: List[WriteOp]) -> List[DocKey]:
		current = {op.key: self._docs.get(op.key) for op in ops}
		# apply_writes raises before anything is stored, so a failing op leaves no partial state
		new_states = apply_writes(ops, current)
		for key, state in new_states.items():
			if state is None:
				self._docs.pop(key, None)
			else:
				self._docs[key] = state
			self._versions[key] = self._versions.get(key, 0) + 1
		return list(new_states)

	async def _commit_writes(self, ops: List[WriteOp]) -> None:
		async with self._lock:
			changed = self._apply_locked(ops)
		self._notify(changed)

	async def _attempt_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
		txn = _MemoryTransaction(self)
		result = await fn(txn)
		async with self._lock:
			for key, version in txn.read_versions.items():
				if self._versions.get(key, 0) != version:
					raise TransactionConflict(f"{key[0]}/{key[1]}")
			changed = self._apply_locked(txn.ops)
		if changed:
			self._notify(changed)
		return result

	async def reset(self) -> None:
		async with self._lock:
			self._docs.clear()
			self._versions.clear()

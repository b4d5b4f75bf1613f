"""Bounded concurrent lookups joined into a single ordered result."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from roll.obs import metrics as obs_metrics
from roll.settings import settings

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


async def gather_bounded(
	items: Sequence[K],
	lookup: Callable[[K], Awaitable[Optional[V]]],
	*,
	limit: Optional[int] = None,
	timeout: Optional[float] = None,
) -> List[Optional[V]]:
	"""Run `lookup` for every item with at most `limit` in flight.

	Results keep the input order. A lookup that exceeds `timeout` seconds yields
	None; any other exception propagates after the remaining lookups are cancelled.
	"""
	if not items:
		return []
	cap = max(1, limit or settings.hydration_concurrency)
	per_item = timeout if timeout is not None else settings.hydration_timeout_seconds
	semaphore = asyncio.Semaphore(cap)

	async def _one(item: K) -> Optional[V]:
		async with semaphore:
			try:
				value = await asyncio.wait_for(lookup(item), timeout=per_item)
			except asyncio.TimeoutError:
				obs_metrics.inc_hydration("timeout")
				logger.warning("Lookup for %s timed out after %.1fs", item, per_item)
				return None
		obs_metrics.inc_hydration("hit" if value is not None else "miss")
		return value

	tasks = [asyncio.ensure_future(_one(item)) for item in items]
	try:
		return list(await asyncio.gather(*tasks))
	except BaseException:
		for task in tasks:
			task.cancel()
		raise

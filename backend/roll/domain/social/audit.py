"""Audit helpers for friend requests & relationships."""

from __future__ import annotations

import logging
from typing import Dict

from redis.exceptions import RedisError

from roll.infra.redis import redis_client
from roll.obs import metrics as obs_metrics
from roll.settings import settings

logger = logging.getLogger(__name__)

REQUEST_STREAM = "x:requests.events"
FRIEND_STREAM = "x:friendships.events"


async def _append(stream: str, event: str, fields: Dict[str, str]) -> None:
	if not settings.audit_streams_enabled:
		return
	payload = {"event": event, **fields}
	try:
		await redis_client.xadd(stream, payload)
	except RedisError:
		# Audit is best effort once the write has committed
		logger.exception("Failed to append %s to %s", event, stream)


async def log_request_event(event: str, fields: Dict[str, str]) -> None:
	await _append(REQUEST_STREAM, event, fields)


async def log_friend_event(event: str, fields: Dict[str, str]) -> None:
	await _append(FRIEND_STREAM, event, fields)


def inc_request_sent(result: str) -> None:
	obs_metrics.inc_request_sent(result)


def inc_request_reject(reason: str) -> None:
	obs_metrics.inc_request_reject(reason)


def inc_response(decision: str) -> None:
	obs_metrics.inc_request_response(decision)


def inc_block(action: str) -> None:
	obs_metrics.inc_block(action)

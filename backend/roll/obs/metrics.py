"""Central registry for Prometheus metrics used across the social core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

FRIEND_REQUESTS_SENT = Counter(
	"roll_friend_requests_sent_total",
	"Friend requests sent",
	["result"],
)

FRIEND_REQUESTS_UNSENT = Counter(
	"roll_friend_requests_unsent_total",
	"Open friend requests deleted by their sender",
)

FRIEND_REQUEST_RESPONSES = Counter(
	"roll_friend_request_responses_total",
	"Friend request responses",
	["decision"],
)

FRIEND_REQUEST_REJECTS = Counter(
	"roll_friend_request_rejects_total",
	"Rejected friend request operations",
	["reason"],
)

UNFRIEND_TOTAL = Counter(
	"roll_unfriend_total",
	"Unfriend operations",
	["result"],
)

BLOCKS_TOTAL = Counter(
	"roll_blocks_total",
	"Block operations",
	["action"],
)

STORE_TRANSACTIONS = Counter(
	"roll_store_transactions_total",
	"Document store transaction attempts",
	["backend", "result"],
)

STORE_WATCHES = Gauge(
	"roll_store_watches_active",
	"Active document store watches",
	["backend"],
)

HYDRATION_LOOKUPS = Counter(
	"roll_hydration_lookups_total",
	"Detail hydration lookups issued by fan-out joins",
	["result"],
)

FEED_BUILD_DURATION = Histogram(
	"roll_feed_build_duration_seconds",
	"Duration of feed reads including poster hydration",
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

PHOTO_UPLOADS = Counter(
	"roll_photo_uploads_total",
	"Camera roll photo uploads",
	["result"],
)

USERS_REGISTERED = Counter(
	"roll_users_registered_total",
	"User profile documents created",
)


def inc_request_sent(result: str) -> None:
	FRIEND_REQUESTS_SENT.labels(result=result).inc()


def inc_request_unsent(count: int = 1) -> None:
	FRIEND_REQUESTS_UNSENT.inc(count)


def inc_request_response(decision: str) -> None:
	FRIEND_REQUEST_RESPONSES.labels(decision=decision).inc()


def inc_request_reject(reason: str) -> None:
	FRIEND_REQUEST_REJECTS.labels(reason=reason).inc()


def inc_unfriend(result: str) -> None:
	UNFRIEND_TOTAL.labels(result=result).inc()


def inc_block(action: str) -> None:
	BLOCKS_TOTAL.labels(action=action).inc()


def inc_transaction(backend: str, result: str) -> None:
	STORE_TRANSACTIONS.labels(backend=backend, result=result).inc()


def watch_started(backend: str) -> None:
	STORE_WATCHES.labels(backend=backend).inc()


def watch_stopped(backend: str) -> None:
	STORE_WATCHES.labels(backend=backend).dec()


def inc_hydration(result: str) -> None:
	HYDRATION_LOOKUPS.labels(result=result).inc()


def observe_feed_build(seconds: float) -> None:
	FEED_BUILD_DURATION.observe(seconds)


def inc_photo_upload(result: str) -> None:
	PHOTO_UPLOADS.labels(result=result).inc()


def inc_user_registered() -> None:
	USERS_REGISTERED.inc()

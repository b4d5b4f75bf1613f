"""Domain-level exceptions for friend requests and relationships."""

from __future__ import annotations


class SocialError(Exception):
    """Base class for social feature errors."""

    reason: str = "unknown"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.reason)
        if reason:
            self.reason = reason


class RequestConflict(SocialError):
    reason = "conflict"


class RequestAlreadySent(RequestConflict):
    reason = "already_sent"


class AlreadyFriends(RequestConflict):
    reason = "already_friends"


class SelfTargetError(RequestConflict):
    reason = "self_target"


class RelationshipBlocked(SocialError):
    reason = "blocked"


class RequestForbidden(SocialError):
    reason = "forbidden"


class RequestNotFound(SocialError):
    reason = "not_found"


class UserNotFound(SocialError):
    reason = "user_missing"


class RequestGone(SocialError):
    reason = "gone"


class UnsupportedTransition(SocialError):
    """Raised for relationship transitions the product does not offer."""

    reason = "unsupported"

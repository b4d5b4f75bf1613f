"""Feed domain exports."""

from .schemas import FeedPost  # noqa: F401
from .service import FeedService  # noqa: F401

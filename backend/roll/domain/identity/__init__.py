"""Identity domain exports."""

from .schemas import UserProfile  # noqa: F401
from .service import IdentityService  # noqa: F401

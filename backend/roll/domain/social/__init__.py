"""Social domain exports."""

from . import audit, policy, read_models, service  # noqa: F401
from .models import Decision, FriendRequest, Relationship, RequestStatus, User  # noqa: F401
from .read_models import CandidatesView, FriendsView, IncomingRequestsView, ReadModel  # noqa: F401
from .schemas import CandidateRow, FriendProfile, IncomingRequest  # noqa: F401
from .service import RelationshipManager  # noqa: F401

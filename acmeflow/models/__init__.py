from .account import AccountStatus
from .challenge import ChallengeType
from .identifier import IdentifierType

__all__ = [
    "AccountStatus",
    "ChallengeType",
    "IdentifierType",
]

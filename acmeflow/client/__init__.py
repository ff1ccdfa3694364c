from .client import AcmeClient
from .challenge_solver import DummySolver, ChallengeSolver
from .core import Core
from .dns01 import PropagationVerifier
from .exceptions import (
    AcmeClientException,
    CouldNotCompleteChallenge,
    InvalidDirectory,
    NonceRetryTimeout,
    OrderFailed,
    PropagationTimeout,
    ProtocolViolation,
)

__all__ = [
    "AcmeClient",
    "Core",
    "DummySolver",
    "ChallengeSolver",
    "PropagationVerifier",
    "AcmeClientException",
    "CouldNotCompleteChallenge",
    "InvalidDirectory",
    "NonceRetryTimeout",
    "OrderFailed",
    "PropagationTimeout",
    "ProtocolViolation",
]

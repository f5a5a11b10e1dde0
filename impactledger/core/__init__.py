# Core ledger services
from .errors import (
    LedgerError,
    ValidationError,
    UnknownCategoryError,
    InvalidUnitError,
    InvalidMethodologyError,
    OutOfRangePolicyError,
    InvalidScoreError,
    ClaimNotFoundError,
    AlreadyVerifiedError,
    ClaimTooOldError,
    UnauthorizedError,
    DuplicateIdError,
    ChainError,
)
from .hasher import Hasher, CanonicalSerializationError
from .signer import Signer
from .signing_service import KeyPair, SigningService, get_signing_service
from .access import AccessControl
from .policies import PolicyRegistry
from .engine import ValidationEngine, MAX_CONFIDENCE_SCORE
from .ledger import ImpactLedger, create_ledger

__all__ = [
    "LedgerError",
    "ValidationError",
    "UnknownCategoryError",
    "InvalidUnitError",
    "InvalidMethodologyError",
    "OutOfRangePolicyError",
    "InvalidScoreError",
    "ClaimNotFoundError",
    "AlreadyVerifiedError",
    "ClaimTooOldError",
    "UnauthorizedError",
    "DuplicateIdError",
    "ChainError",
    "Hasher",
    "CanonicalSerializationError",
    "Signer",
    "KeyPair",
    "SigningService",
    "get_signing_service",
    "AccessControl",
    "PolicyRegistry",
    "ValidationEngine",
    "MAX_CONFIDENCE_SCORE",
    "ImpactLedger",
    "create_ledger",
]

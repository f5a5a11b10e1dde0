"""
Ledger Errors

Every rejection is synchronous and leaves no partial state behind.
Each concrete error carries a stable `code` that the HTTP layer, logs and
metrics report verbatim.
"""


class LedgerError(Exception):
    """Base exception for ledger errors."""
    code = "LedgerError"


class ValidationError(LedgerError):
    """Raised when an operation is rejected at the boundary."""
    code = "ValidationError"


class UnknownCategoryError(ValidationError):
    """No policy for the category, or its max_age is zero."""
    code = "UnknownCategory"


class InvalidUnitError(ValidationError):
    code = "InvalidUnit"


class InvalidMethodologyError(ValidationError):
    code = "InvalidMethodology"


class OutOfRangePolicyError(ValidationError):
    """Value violates the sign policy or lies outside [min_value, max_value]."""
    code = "OutOfRangePolicy"


class InvalidScoreError(ValidationError):
    code = "InvalidScore"


class ClaimNotFoundError(ValidationError):
    code = "ClaimNotFound"


class AlreadyVerifiedError(ValidationError):
    code = "AlreadyVerified"


class ClaimTooOldError(ValidationError):
    """Claim aged past its category's max_age before being verified."""
    code = "ClaimTooOld"


class UnauthorizedError(ValidationError):
    """Caller lacks the role the operation requires."""
    code = "Unauthorized"


class DuplicateIdError(ValidationError):
    code = "DuplicateId"


class ChainError(LedgerError):
    """Raised when an audit stream fails integrity checks."""
    code = "ChainError"

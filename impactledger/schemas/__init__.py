# Canonical schemas for the impact claim ledger

from .access import AuthContext, Role
from .claim import ClaimDraft, ClaimStatus, ImpactClaim
from .policy import ValidationPolicy
from .events import (
    AuditEvent,
    AuditEventType,
    ClaimSubmittedPayload,
    ClaimVerifiedPayload,
    MethodologyAddedPayload,
    PolicyUpdatedPayload,
    RoleGrantedPayload,
    UnitAddedPayload,
)

__all__ = [
    # Access
    "AuthContext",
    "Role",
    # Claim
    "ClaimDraft",
    "ClaimStatus",
    "ImpactClaim",
    # Policy
    "ValidationPolicy",
    # Events
    "AuditEvent",
    "AuditEventType",
    "ClaimSubmittedPayload",
    "ClaimVerifiedPayload",
    "MethodologyAddedPayload",
    "PolicyUpdatedPayload",
    "RoleGrantedPayload",
    "UnitAddedPayload",
]

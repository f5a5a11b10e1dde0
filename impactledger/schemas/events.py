"""
Audit Event Schema

The notification stream is append-only. Indexers replay it to rebuild
history; there is no other history API.

Each event:
- Carries a canonical payload
- Is hashed and chained to the previous event
- Is signed with the ledger's system key
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .access import Role
from .policy import ValidationPolicy


class AuditEventType(str, Enum):
    """
    All notification types.
    You can add more later, never remove.
    """
    ROLE_GRANTED = "ROLE_GRANTED"
    POLICY_UPDATED = "POLICY_UPDATED"
    UNIT_ADDED = "UNIT_ADDED"
    METHODOLOGY_ADDED = "METHODOLOGY_ADDED"
    CLAIM_SUBMITTED = "CLAIM_SUBMITTED"
    CLAIM_VERIFIED = "CLAIM_VERIFIED"


# ============================================================
# Event Payloads
# ============================================================

class RoleGrantedPayload(BaseModel):
    """
    Payload for ROLE_GRANTED.

    granted_by is None only for the bootstrap admin grant.
    """
    role: Role
    identity: str
    granted_by: Optional[str] = None

    schema_version: int = 1


class PolicyUpdatedPayload(BaseModel):
    """Payload for POLICY_UPDATED. Carries the full replacement record."""
    category: str
    policy: ValidationPolicy

    schema_version: int = 1


class UnitAddedPayload(BaseModel):
    category: str
    unit: str

    schema_version: int = 1


class MethodologyAddedPayload(BaseModel):
    category: str
    methodology: str

    schema_version: int = 1


class ClaimSubmittedPayload(BaseModel):
    """
    Payload for CLAIM_SUBMITTED.

    Indexers mostly need (claim_id, profile_ref, category); the remaining
    fields let a replay rebuild the claim exactly.
    """
    claim_id: str
    profile_ref: str
    category: str

    metric: str
    unit: str
    value: Decimal
    submitted_at: datetime
    location: str
    methodology: str
    evidence_ref: str
    submitter: str
    nonce: int = Field(..., ge=0)

    schema_version: int = 1


class ClaimVerifiedPayload(BaseModel):
    """Payload for CLAIM_VERIFIED."""
    claim_id: str
    validator: str
    confidence_score: int = Field(..., ge=0, le=100)
    verified_at: datetime

    schema_version: int = 1


PAYLOAD_TYPES: dict[AuditEventType, type[BaseModel]] = {
    AuditEventType.ROLE_GRANTED: RoleGrantedPayload,
    AuditEventType.POLICY_UPDATED: PolicyUpdatedPayload,
    AuditEventType.UNIT_ADDED: UnitAddedPayload,
    AuditEventType.METHODOLOGY_ADDED: MethodologyAddedPayload,
    AuditEventType.CLAIM_SUBMITTED: ClaimSubmittedPayload,
    AuditEventType.CLAIM_VERIFIED: ClaimVerifiedPayload,
}


# ============================================================
# The Core Event Object
# ============================================================

class AuditEvent(BaseModel):
    """
    The immutable notification record.

    Chain Integrity Rules:
    - sequence_number is monotonically increasing (0, 1, 2, ...)
    - previous_event_hash is None for sequence 0 only
    - event_hash = SHA256(previous_event_hash + ":" + canonical(payload))
    - signature is the system key's Ed25519 signature of event_hash
    """
    event_id: UUID
    sequence_number: int = Field(..., ge=0)
    event_type: AuditEventType

    entity_id: str = Field(
        ...,
        description="Claim id, category tag, or identity the event concerns"
    )

    payload: dict[str, Any] = Field(
        ...,
        description="Canonical payload (JSON-safe values only)"
    )

    previous_event_hash: Optional[str] = None
    event_hash: str

    actor: Optional[str] = Field(
        default=None,
        description="Identity that caused the event. None for system bootstrap."
    )
    signature: str = Field(..., description="Base64 Ed25519 signature of event_hash")

    created_at: datetime

    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 0

    def parsed_payload(self) -> BaseModel:
        """Parse the payload back into its typed model."""
        return PAYLOAD_TYPES[self.event_type].model_validate(self.payload)

    def validate_chain_rules(self) -> None:
        """
        Validate chain integrity rules.

        Raises ValueError if rules are violated.
        """
        if self.sequence_number == 0:
            if self.previous_event_hash is not None:
                raise ValueError(
                    f"Genesis event (sequence 0) must have previous_event_hash=None, "
                    f"got: {self.previous_event_hash}"
                )
        else:
            if self.previous_event_hash is None:
                raise ValueError(
                    f"Non-genesis event (sequence {self.sequence_number}) must have "
                    f"previous_event_hash set, got None"
                )
            if len(self.previous_event_hash) != 64:
                raise ValueError(
                    f"previous_event_hash must be 64 hex characters, "
                    f"got {len(self.previous_event_hash)}"
                )

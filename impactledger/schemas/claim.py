"""
Impact Claim Schema

A claim is a single reported measurement of environmental impact, tied
to a project profile and a category. It is created once by submission and
changed once by verification. Nothing else ever happens to it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ClaimStatus(str, Enum):
    """
    Claims move through exactly one path.
    SUBMITTED → VERIFIED. No reversals, no other states.
    """
    SUBMITTED = "submitted"
    VERIFIED = "verified"


class ClaimDraft(BaseModel):
    """The submitter-supplied part of a claim, before validation."""
    model_config = ConfigDict(frozen=True)

    profile_ref: str = Field(
        ...,
        description="Opaque reference to the project profile in the external registry"
    )
    category: str = Field(
        ...,
        description="Ecosystem-service category tag",
        examples=["carbon_reduction", "biodiversity"]
    )
    metric: str = Field(..., examples=["co2_avoided"])
    unit: str = Field(..., examples=["tCO2e"])
    value: Decimal = Field(
        ...,
        description="Signed measured value; sign policy depends on the category"
    )
    location: str = Field(..., examples=["Amazonas, BR"])
    methodology: str = Field(..., examples=["GHG_Protocol"])
    evidence_ref: str = Field(
        ...,
        description="Content hash pointing to off-chain evidence"
    )


class ImpactClaim(BaseModel):
    """
    A stored claim.

    Frozen: verification produces a new instance that the store swaps in,
    so readers see either the submitted or the verified claim, never a mix.
    """
    model_config = ConfigDict(frozen=True)

    claim_id: str = Field(
        ...,
        min_length=64,
        max_length=64,
        description="Content-derived identifier (SHA-256 hex)"
    )
    profile_ref: str
    category: str
    metric: str
    unit: str
    value: Decimal
    submitted_at: datetime
    location: str
    methodology: str
    evidence_ref: str

    submitter: str = Field(..., description="Identity that submitted the claim")
    nonce: int = Field(..., ge=0, description="Ledger submission counter used in the id")

    validator: Optional[str] = Field(default=None)
    verified: bool = Field(default=False)
    confidence_score: int = Field(default=0, ge=0, le=100)

    @property
    def status(self) -> ClaimStatus:
        return ClaimStatus.VERIFIED if self.verified else ClaimStatus.SUBMITTED

    @classmethod
    def from_draft(
        cls,
        claim_id: str,
        draft: ClaimDraft,
        submitter: str,
        submitted_at: datetime,
        nonce: int,
    ) -> "ImpactClaim":
        return cls(
            claim_id=claim_id,
            submitter=submitter,
            submitted_at=submitted_at,
            nonce=nonce,
            **draft.model_dump(),
        )

    def as_verified(self, validator: str, confidence_score: int) -> "ImpactClaim":
        """Return the terminal form of this claim."""
        if self.verified:
            raise ValueError(f"Claim {self.claim_id} is already verified")
        return self.model_copy(update={
            "validator": validator,
            "verified": True,
            "confidence_score": confidence_score,
        })

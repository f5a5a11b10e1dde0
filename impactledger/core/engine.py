"""
Validation Engine

Stateless evaluation of claim submissions and verification requests.

The order of checks is externally observable (callers see the first
failing rule only) and must not change:

Submission:
    1. category known               → UnknownCategoryError
    2. unit allowed                 → InvalidUnitError
    3. methodology allowed (exact)  → InvalidMethodologyError
    4. sign policy, then bounds     → OutOfRangePolicyError

Verification:
    1. 0 <= score <= 100            → InvalidScoreError
    2. claim exists                 → ClaimNotFoundError
    3. claim not yet verified       → AlreadyVerifiedError
    4. now - submitted_at <= max_age → ClaimTooOldError
    5. caller holds Validator       → UnauthorizedError

Known intake gap: policies list required evidence types, but a submission
carries a single evidence reference with no per-type breakdown, so
required_evidence_types is not checked here.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ..schemas import AuthContext, ClaimDraft, ImpactClaim, Role, ValidationPolicy
from .access import AccessControl
from .errors import (
    AlreadyVerifiedError,
    ClaimNotFoundError,
    ClaimTooOldError,
    InvalidMethodologyError,
    InvalidScoreError,
    InvalidUnitError,
    OutOfRangePolicyError,
    UnknownCategoryError,
)
from .hasher import Hasher

MAX_CONFIDENCE_SCORE = 100


class ValidationEngine:
    """Pure rule evaluation. Holds no state; the ledger supplies everything."""

    @staticmethod
    def evaluate_submission(
        draft: ClaimDraft,
        policy: Optional[ValidationPolicy],
        submitter: str,
        submitted_at: datetime,
        nonce: int,
    ) -> str:
        """
        Decide whether a draft is acceptable under its category policy.

        Returns:
            The content-derived claim id.

        Raises:
            UnknownCategoryError, InvalidUnitError, InvalidMethodologyError,
            OutOfRangePolicyError
        """
        if policy is None or not policy.is_known:
            raise UnknownCategoryError(f"Unknown category '{draft.category}'")

        if draft.unit not in policy.allowed_units:
            raise InvalidUnitError(
                f"Unit '{draft.unit}' is not allowed for category '{draft.category}'"
            )

        if draft.methodology not in policy.allowed_methodologies:
            raise InvalidMethodologyError(
                f"Methodology '{draft.methodology}' is not allowed for "
                f"category '{draft.category}'"
            )

        if not draft.value.is_finite():
            raise OutOfRangePolicyError(f"Value {draft.value} is not a finite number")

        if not policy.allow_negative and draft.value < Decimal("0"):
            raise OutOfRangePolicyError(
                f"Negative value {draft.value} not allowed for category '{draft.category}'"
            )

        if not (policy.min_value <= draft.value <= policy.max_value):
            raise OutOfRangePolicyError(
                f"Value {draft.value} outside [{policy.min_value}, {policy.max_value}] "
                f"for category '{draft.category}'"
            )

        return Hasher.derive_claim_id(
            profile_ref=draft.profile_ref,
            category=draft.category,
            submitted_at=submitted_at,
            submitter=submitter,
            nonce=nonce,
        )

    @staticmethod
    def evaluate_verification(
        claim_id: str,
        claim: Optional[ImpactClaim],
        policy: Optional[ValidationPolicy],
        confidence_score: int,
        ctx: AuthContext,
        access: AccessControl,
        now: datetime,
    ) -> None:
        """
        Decide whether ctx may confirm claim with confidence_score at time now.

        The freshness rule is re-checked here, at confirmation time: a claim
        left pending past its category's max_age can never be verified.

        Raises:
            InvalidScoreError, ClaimNotFoundError, AlreadyVerifiedError,
            ClaimTooOldError, UnauthorizedError
        """
        if not 0 <= confidence_score <= MAX_CONFIDENCE_SCORE:
            raise InvalidScoreError(
                f"Confidence score {confidence_score} outside [0, {MAX_CONFIDENCE_SCORE}]"
            )

        if claim is None:
            raise ClaimNotFoundError(f"Claim {claim_id} does not exist")

        if claim.verified:
            raise AlreadyVerifiedError(
                f"Claim {claim_id} is already verified. "
                "Claims can only be verified once."
            )

        max_age = policy.max_age if policy is not None else timedelta(0)
        if now - claim.submitted_at > max_age:
            raise ClaimTooOldError(
                f"Claim {claim_id} was submitted at {claim.submitted_at.isoformat()}, "
                f"older than the {claim.category} limit of {max_age}"
            )

        access.require(ctx, Role.VALIDATOR)

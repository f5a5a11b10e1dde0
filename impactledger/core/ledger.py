"""
Impact Ledger - The Heart of the System

Records environmental impact claims, validates them against per-category
policies, and lets validators confirm them exactly once.

The ledger:
- Checks authorization against the role table
- Runs the ValidationEngine
- Appends a signed, chained audit event
- Applies the claim/policy/role write

Rules (enforced in code):
- Every mutation happens inside the audit log's append context, which is
  the single global critical section
- All validation runs before any write; a rejected call leaves no trace
- The audit event is committed first; the state write after it cannot fail
- A claim is created once and verified once
- Policy changes never touch existing claims

Audit stream replay (load_from_events) rebuilds policies, roles, claims
and the submission counter.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Optional, TYPE_CHECKING
from uuid import uuid4

from pydantic import BaseModel

from ..observability import get_logger, get_metrics
from ..schemas import (
    AuditEvent,
    AuditEventType,
    AuthContext,
    ClaimDraft,
    ClaimSubmittedPayload,
    ClaimVerifiedPayload,
    ImpactClaim,
    MethodologyAddedPayload,
    PolicyUpdatedPayload,
    Role,
    RoleGrantedPayload,
    UnitAddedPayload,
    ValidationPolicy,
)
from .access import AccessControl
from .engine import ValidationEngine
from .errors import ChainError, DuplicateIdError, LedgerError
from .hasher import Hasher
from .policies import PolicyRegistry
from .signing_service import SigningService, get_signing_service

if TYPE_CHECKING:
    from ..db.store import AppendContext, AuditLog, ClaimStore

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ImpactLedger:
    """
    The core ledger service.

    Owns the PolicyRegistry and AccessControl tables; delegates claim and
    audit storage to ClaimStore and AuditLog implementations.

    CONCURRENCY GUARANTEES:
    - Mutations are serialized by AuditLog.begin_append()
    - Two racing verifications of one claim: exactly one succeeds, the
      others see AlreadyVerifiedError
    - Reads (get_claim, get_policy) never block and see committed state only
    """

    def __init__(
        self,
        audit_log: Optional["AuditLog"] = None,
        claim_store: Optional["ClaimStore"] = None,
        signing_service: Optional[SigningService] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Args:
            audit_log: Notification stream. Defaults to InMemoryAuditLog.
            claim_store: Claim storage. Defaults to InMemoryClaimStore.
            signing_service: Signs audit events. Defaults to the process-wide service.
            clock: Returns the current tz-aware time. Defaults to UTC wall clock.
        """
        # Import here to avoid circular imports
        from ..db.store import InMemoryAuditLog, InMemoryClaimStore

        self._audit_log = audit_log if audit_log is not None else InMemoryAuditLog()
        self._claims = claim_store if claim_store is not None else InMemoryClaimStore()
        self._signing = signing_service if signing_service is not None else get_signing_service()
        self._clock = clock or utc_now

        self._access = AccessControl()
        self._policies = PolicyRegistry(self._access)

        # Next submission nonce; advanced only inside the append context
        self._next_nonce = 0

    # ================================================================
    # PROPERTIES
    # ================================================================

    @property
    def audit_log(self) -> "AuditLog":
        return self._audit_log

    @property
    def claim_store(self) -> "ClaimStore":
        return self._claims

    @property
    def access(self) -> AccessControl:
        return self._access

    @property
    def policies(self) -> PolicyRegistry:
        return self._policies

    @property
    def public_key(self) -> str:
        """System public key that audit event signatures verify against."""
        return self._signing.public_key

    @property
    def event_count(self) -> int:
        return self._audit_log.get_event_count()

    @property
    def last_event_hash(self) -> Optional[str]:
        return self._audit_log.get_head().last_event_hash

    @property
    def claim_count(self) -> int:
        return self._claims.count()

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            raise LedgerError("Ledger clock must return timezone-aware datetimes")
        return now

    # ================================================================
    # EVENT CREATION
    # ================================================================

    def _create_event(
        self,
        ctx: "AppendContext",
        event_type: AuditEventType,
        entity_id: str,
        payload: BaseModel,
        actor: Optional[str],
    ) -> AuditEvent:
        """
        Build and commit an audit event on the held chain head.

        Uses (sequence, previous_hash) from the append context, not from any
        cached value, so it is always consistent with the log.
        """
        start = time.perf_counter()

        canonical = Hasher.canonical_payload(payload)
        sequence_number = ctx.head.next_sequence
        previous_hash = None if sequence_number == 0 else ctx.head.last_event_hash

        if sequence_number > 0 and previous_hash is None:
            raise ChainError(
                f"Cannot create event with sequence {sequence_number}: "
                "previous event hash is missing but this is not genesis"
            )

        event_hash = Hasher.hash_event(canonical, previous_hash)

        event = AuditEvent(
            event_id=uuid4(),
            sequence_number=sequence_number,
            event_type=event_type,
            entity_id=entity_id,
            payload=canonical,
            previous_event_hash=previous_hash,
            event_hash=event_hash,
            actor=actor,
            signature=self._signing.sign_event(event_hash),
            created_at=self._now(),
        )
        event.validate_chain_rules()

        ctx.commit(event)
        get_metrics().record_append((time.perf_counter() - start) * 1000)
        return event

    def _rejected(self, error: Exception, operation: str, **fields) -> None:
        code = getattr(error, "code", type(error).__name__)
        get_metrics().record_rejection(code)
        logger.info(f"{operation} rejected", operation=operation, code=code, reason=str(error), **fields)

    # ================================================================
    # ACCESS CONTROL
    # ================================================================

    def bootstrap_admin(self, identity: str) -> AuditEvent:
        """
        Grant the first Admin. Allowed only while no admin exists.

        This is the genesis grant: it has no granting identity.
        """
        with self._audit_log.begin_append() as ctx:
            self._access.check_grant(None, Role.ADMIN, identity)
            event = self._create_event(
                ctx,
                AuditEventType.ROLE_GRANTED,
                entity_id=identity,
                payload=RoleGrantedPayload(role=Role.ADMIN, identity=identity),
                actor=None,
            )
            self._access._apply_grant(Role.ADMIN, identity)

        logger.info("Bootstrap admin granted", identity=identity)
        return event

    def grant_role(self, ctx: AuthContext, role: Role, identity: str) -> Optional[AuditEvent]:
        """
        Admin-only. Add identity to role.

        Returns:
            The ROLE_GRANTED event, or None if identity already held role.
        """
        try:
            with self._audit_log.begin_append() as tx:
                if not self._access.check_grant(ctx, role, identity):
                    return None
                event = self._create_event(
                    tx,
                    AuditEventType.ROLE_GRANTED,
                    entity_id=identity,
                    payload=RoleGrantedPayload(role=role, identity=identity, granted_by=ctx.identity),
                    actor=ctx.identity,
                )
                self._access._apply_grant(role, identity)
        except LedgerError as e:
            self._rejected(e, "grant_role", role=role.value, identity=identity)
            raise

        logger.info("Role granted", role=role.value, identity=identity, granted_by=ctx.identity)
        return event

    def has_role(self, role: Role, identity: str) -> bool:
        return self._access.has_role(role, identity)

    # ================================================================
    # POLICY MANAGEMENT
    # ================================================================

    def get_policy(self, category: str) -> Optional[ValidationPolicy]:
        return self._policies.get_policy(category)

    def is_known_category(self, category: str) -> bool:
        return self._policies.is_known_category(category)

    def list_policies(self) -> dict[str, ValidationPolicy]:
        return self._policies.list_policies()

    def set_policy(self, ctx: AuthContext, category: str, policy: ValidationPolicy) -> AuditEvent:
        """Admin-only. Replace the category's policy record in full."""
        try:
            with self._audit_log.begin_append() as tx:
                self._policies.check_set_policy(ctx, category)
                event = self._create_event(
                    tx,
                    AuditEventType.POLICY_UPDATED,
                    entity_id=category,
                    payload=PolicyUpdatedPayload(category=category, policy=policy),
                    actor=ctx.identity,
                )
                self._policies._apply_policy(category, policy)
        except LedgerError as e:
            self._rejected(e, "set_policy", category=category)
            raise

        get_metrics().record_policy_change()
        logger.info("Policy updated", category=category, known=policy.is_known)
        return event

    def add_unit(self, ctx: AuthContext, category: str, unit: str) -> AuditEvent:
        """Admin-only. Add unit to the category's allowed units (set union)."""
        try:
            with self._audit_log.begin_append() as tx:
                self._policies.check_add_unit(ctx, category, unit)
                event = self._create_event(
                    tx,
                    AuditEventType.UNIT_ADDED,
                    entity_id=category,
                    payload=UnitAddedPayload(category=category, unit=unit),
                    actor=ctx.identity,
                )
                self._policies._apply_unit(category, unit)
        except LedgerError as e:
            self._rejected(e, "add_unit", category=category, unit=unit)
            raise

        get_metrics().record_policy_change()
        logger.info("Unit added", category=category, unit=unit)
        return event

    def add_methodology(self, ctx: AuthContext, category: str, methodology: str) -> AuditEvent:
        """Admin-only. Add methodology to the category's allowed set (set union)."""
        try:
            with self._audit_log.begin_append() as tx:
                self._policies.check_add_methodology(ctx, category, methodology)
                event = self._create_event(
                    tx,
                    AuditEventType.METHODOLOGY_ADDED,
                    entity_id=category,
                    payload=MethodologyAddedPayload(category=category, methodology=methodology),
                    actor=ctx.identity,
                )
                self._policies._apply_methodology(category, methodology)
        except LedgerError as e:
            self._rejected(e, "add_methodology", category=category, methodology=methodology)
            raise

        get_metrics().record_policy_change()
        logger.info("Methodology added", category=category, methodology=methodology)
        return event

    # ================================================================
    # CLAIM LIFECYCLE
    # ================================================================

    def submit_claim(self, ctx: AuthContext, draft: ClaimDraft) -> str:
        """
        Validate and record a new claim. Any identity may submit.

        Returns:
            The content-derived claim id. The claim starts unverified with
            confidence score 0 and no validator.
        """
        try:
            with self._audit_log.begin_append() as tx:
                submitted_at = self._now()
                nonce = self._next_nonce

                claim_id = ValidationEngine.evaluate_submission(
                    draft,
                    self._policies.get_policy(draft.category),
                    submitter=ctx.identity,
                    submitted_at=submitted_at,
                    nonce=nonce,
                )

                if self._claims.exists(claim_id):
                    raise DuplicateIdError(f"Claim {claim_id} already exists")

                claim = ImpactClaim.from_draft(
                    claim_id, draft, submitter=ctx.identity,
                    submitted_at=submitted_at, nonce=nonce,
                )
                self._create_event(
                    tx,
                    AuditEventType.CLAIM_SUBMITTED,
                    entity_id=claim_id,
                    payload=ClaimSubmittedPayload(**claim.model_dump(
                        exclude={"validator", "verified", "confidence_score"}
                    )),
                    actor=ctx.identity,
                )
                self._claims.create(claim)
                self._next_nonce = nonce + 1
        except LedgerError as e:
            self._rejected(
                e, "submit_claim",
                category=draft.category, profile_ref=draft.profile_ref, submitter=ctx.identity,
            )
            raise

        get_metrics().record_submission()
        logger.info(
            "Claim submitted",
            claim_id=claim_id,
            category=draft.category,
            profile_ref=draft.profile_ref,
            submitter=ctx.identity,
        )
        return claim_id

    def verify_claim(self, ctx: AuthContext, claim_id: str, confidence_score: int) -> ImpactClaim:
        """
        Confirm a claim. Validator-only, exactly once per claim.

        Returns:
            The verified claim.
        """
        try:
            with self._audit_log.begin_append() as tx:
                now = self._now()
                claim = self._claims.get(claim_id)
                policy = self._policies.get_policy(claim.category) if claim else None

                ValidationEngine.evaluate_verification(
                    claim_id,
                    claim,
                    policy,
                    confidence_score,
                    ctx=ctx,
                    access=self._access,
                    now=now,
                )

                self._create_event(
                    tx,
                    AuditEventType.CLAIM_VERIFIED,
                    entity_id=claim_id,
                    payload=ClaimVerifiedPayload(
                        claim_id=claim_id,
                        validator=ctx.identity,
                        confidence_score=confidence_score,
                        verified_at=now,
                    ),
                    actor=ctx.identity,
                )
                verified = self._claims.mark_verified(claim_id, ctx.identity, confidence_score)
        except LedgerError as e:
            self._rejected(e, "verify_claim", claim_id=claim_id, validator=ctx.identity)
            raise

        get_metrics().record_verification()
        logger.info(
            "Claim verified",
            claim_id=claim_id,
            validator=ctx.identity,
            confidence_score=confidence_score,
        )
        return verified

    def get_claim(self, claim_id: str) -> Optional[ImpactClaim]:
        """Read a claim. No authorization; returns None if not found."""
        return self._claims.get(claim_id)

    def list_claims(self) -> list[ImpactClaim]:
        return self._claims.list_all()

    # ================================================================
    # AUDIT STREAM
    # ================================================================

    def get_events(self) -> list[AuditEvent]:
        return self._audit_log.list_all()

    def get_events_for_entity(self, entity_id: str) -> list[AuditEvent]:
        return self._audit_log.list_for_entity(entity_id)

    def verify_chain_integrity(self) -> bool:
        """
        Verify the whole audit chain, including signatures.

        Run periodically as a health check.
        """
        try:
            self.verify_event_chain(self.get_events(), public_key=self.public_key)
        except ChainError:
            logger.error("Audit chain integrity check failed", exc_info=True)
            return False
        return True

    @staticmethod
    def verify_event_chain(
        events: list[AuditEvent],
        public_key: Optional[str] = None,
    ) -> None:
        """
        Verify an audit stream: sequence, linkage, hashes and, when
        public_key is given, signatures.

        Raises ChainError on the first violation.
        """
        from .signer import Signer

        prev_hash = None

        for expected_sequence, event in enumerate(events):
            if event.sequence_number != expected_sequence:
                raise ChainError(
                    f"Sequence number gap or out-of-order event. "
                    f"Expected {expected_sequence}, got {event.sequence_number}"
                )

            if event.previous_event_hash != prev_hash:
                raise ChainError(
                    f"Chain linkage broken at sequence {expected_sequence}. "
                    f"Expected previous hash '{prev_hash[:16] if prev_hash else 'None'}...', "
                    f"got '{event.previous_event_hash[:16] if event.previous_event_hash else 'None'}...'"
                )

            if not Hasher.verify_chain(event.payload, event.event_hash, prev_hash):
                raise ChainError(f"Hash verification failed at sequence {expected_sequence}")

            if public_key is not None and not Signer.verify_event(
                event.event_hash, event.signature, public_key
            ):
                raise ChainError(f"Signature verification failed at sequence {expected_sequence}")

            try:
                event.validate_chain_rules()
            except ValueError as e:
                raise ChainError(str(e)) from e

            prev_hash = event.event_hash

    @classmethod
    def load_from_events(
        cls,
        events: list[AuditEvent],
        verify: bool = True,
        public_key: Optional[str] = None,
        signing_service: Optional[SigningService] = None,
        clock: Optional[Clock] = None,
    ) -> "ImpactLedger":
        """
        Rebuild a ledger by replaying an audit stream.

        The whole chain is verified before any state is rebuilt.

        Args:
            events: Audit events (any order; sorted by sequence number)
            verify: Verify the chain first (default True)
            public_key: Also verify signatures against this system key
            signing_service: Key used for events appended after the replay
            clock: Clock for the rebuilt ledger

        Raises:
            ChainError: If the stream fails verification
        """
        from ..db.store import ChainIntegrityError, InMemoryAuditLog

        ordered = sorted(events, key=lambda e: e.sequence_number)
        if verify:
            cls.verify_event_chain(ordered, public_key=public_key)

        audit_log = InMemoryAuditLog()
        try:
            audit_log.load(ordered)
        except ChainIntegrityError as e:
            raise ChainError(str(e)) from e

        ledger = cls(audit_log=audit_log, signing_service=signing_service, clock=clock)
        for event in ordered:
            ledger._rebuild_state_from_event(event)

        logger.info(
            "Ledger rebuilt from audit stream",
            event_count=len(ordered),
            claim_count=ledger.claim_count,
        )
        return ledger

    def _rebuild_state_from_event(self, event: AuditEvent) -> None:
        """Apply one audit event to the in-memory tables (replay only)."""
        payload = event.parsed_payload()

        if isinstance(payload, RoleGrantedPayload):
            self._access._apply_grant(payload.role, payload.identity)

        elif isinstance(payload, PolicyUpdatedPayload):
            self._policies._apply_policy(payload.category, payload.policy)

        elif isinstance(payload, UnitAddedPayload):
            self._policies._apply_unit(payload.category, payload.unit)

        elif isinstance(payload, MethodologyAddedPayload):
            self._policies._apply_methodology(payload.category, payload.methodology)

        elif isinstance(payload, ClaimSubmittedPayload):
            claim = ImpactClaim(**payload.model_dump(exclude={"schema_version"}))
            self._claims.create(claim)
            self._next_nonce = max(self._next_nonce, payload.nonce + 1)

        elif isinstance(payload, ClaimVerifiedPayload):
            self._claims.mark_verified(
                payload.claim_id, payload.validator, payload.confidence_score
            )


def create_ledger(config=None, signing_service: Optional[SigningService] = None,
                  clock: Optional[Clock] = None) -> ImpactLedger:
    """
    Build a ledger from LedgerConfig: bootstrap admin, bootstrap validators,
    then the policy seed. Every step goes through the audited API.
    """
    from ..config import LedgerConfig
    from ..reference.loader import PolicyFileError, seed_policies

    config = config or LedgerConfig.from_env()
    ledger = ImpactLedger(signing_service=signing_service, clock=clock)

    ledger.bootstrap_admin(config.bootstrap_admin)
    admin = AuthContext(identity=config.bootstrap_admin)

    for identity in config.bootstrap_validators:
        ledger.grant_role(admin, Role.VALIDATOR, identity)

    if config.seed_policies and config.policy_file is not None:
        result = seed_policies(ledger, admin, config.policy_file)
        if not result.ok:
            failed = "; ".join(f"{category}: {error}" for category, error in result.errors)
            raise PolicyFileError(f"Policy seed failed for {len(result.errors)} categories: {failed}")

    logger.info(
        "Ledger initialized",
        admin=config.bootstrap_admin,
        validators=len(config.bootstrap_validators),
        categories=len(ledger.list_policies()),
        event_count=ledger.event_count,
    )
    return ledger

"""
Tests for the Impact Ledger

Covers the claim lifecycle:
1. Admin sets a category policy
2. Anyone submits a claim, validated against the policy
3. A validator verifies it exactly once
4. The audit stream replays to the same state
"""

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from impactledger.config import LedgerConfig
from impactledger.core import (
    AlreadyVerifiedError,
    ChainError,
    ClaimNotFoundError,
    ClaimTooOldError,
    DuplicateIdError,
    Hasher,
    ImpactLedger,
    InvalidMethodologyError,
    InvalidScoreError,
    InvalidUnitError,
    KeyPair,
    OutOfRangePolicyError,
    Signer,
    SigningService,
    UnauthorizedError,
    UnknownCategoryError,
    ValidationEngine,
    create_ledger,
)
from impactledger.core.hasher import CanonicalSerializationError
from impactledger.db import ChainIntegrityError, InMemoryClaimStore
from impactledger.observability import get_metrics
from impactledger.reference.loader import PolicyFileError, load_policy_file
from impactledger.schemas import (
    AuditEvent,
    AuditEventType,
    AuthContext,
    ClaimDraft,
    ClaimStatus,
    ImpactClaim,
    Role,
    ValidationPolicy,
)


T0 = datetime(2024, 1, 15, 12, 30, 45, tzinfo=timezone.utc)
ONE_YEAR = timedelta(days=365)

ADMIN = AuthContext(identity="admin")
VALIDATOR = AuthContext(identity="validator-1")
SUBMITTER = AuthContext(identity="0xsubmitter")


class FakeClock:
    """Settable clock for time-based rules."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def carbon_policy(**overrides) -> ValidationPolicy:
    fields = dict(
        min_value=Decimal("0"),
        max_value=Decimal("1000000000000"),
        max_age=ONE_YEAR,
        allow_negative=False,
        required_evidence_types=frozenset({"third_party_audit"}),
        allowed_units=frozenset({"tCO2e"}),
        allowed_methodologies=frozenset({"GHG_Protocol"}),
    )
    fields.update(overrides)
    return ValidationPolicy(**fields)


def make_draft(**overrides) -> ClaimDraft:
    fields = dict(
        profile_ref="profile-001",
        category="carbon_reduction",
        metric="co2_avoided",
        unit="tCO2e",
        value=Decimal("500"),
        location="Amazonas, BR",
        methodology="GHG_Protocol",
        evidence_ref="ab" * 32,
    )
    fields.update(overrides)
    return ClaimDraft(**fields)


@pytest.fixture
def signing():
    private_key, public_key = Signer.generate_keypair()
    return SigningService(KeyPair(private_key=private_key, public_key=public_key))


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def ledger(signing, clock):
    """Ledger with an admin, one validator and the carbon_reduction policy."""
    ledger = ImpactLedger(signing_service=signing, clock=clock)
    ledger.bootstrap_admin(ADMIN.identity)
    ledger.grant_role(ADMIN, Role.VALIDATOR, VALIDATOR.identity)
    ledger.set_policy(ADMIN, "carbon_reduction", carbon_policy())
    return ledger


class TestHasher:
    """Canonical hashing. Claim ids are published; changes here break indexers."""

    def test_sorted_keys(self):
        assert Hasher.hash_data({"b": 2, "a": 1}) == Hasher.hash_data({"a": 1, "b": 2})

    def test_null_omitted(self):
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})

    def test_datetime_requires_timezone(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize({"timestamp": datetime(2024, 1, 1, 12, 0, 0)})

    def test_datetime_normalized_to_utc(self):
        plus5 = timezone(timedelta(hours=5))
        utc_time = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        other_time = datetime(2024, 1, 1, 17, 0, 0, tzinfo=plus5)
        assert Hasher.hash_data({"t": utc_time}) == Hasher.hash_data({"t": other_time})

    def test_floats_banned(self):
        with pytest.raises(CanonicalSerializationError, match="float"):
            Hasher.canonicalize({"value": 1.5})

    def test_sets_banned(self):
        with pytest.raises(CanonicalSerializationError, match="set"):
            Hasher.canonicalize({"units": {"tCO2e"}})

    def test_decimal_as_string(self):
        assert Hasher.canonicalize({"value": Decimal("500.25")}) == \
            '{"__canon_v":1,"value":"500.25"}'

    def test_non_finite_decimal_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.canonicalize({"value": Decimal("NaN")})

    def test_timedelta_as_seconds(self):
        assert Hasher.canonicalize({"max_age": timedelta(days=1)}) == \
            '{"__canon_v":1,"max_age":86400}'

    def test_policy_model_canonicalizes(self):
        """Policy sets are serialized as sorted lists, so policies hash."""
        policy = carbon_policy(allowed_methodologies=frozenset({"Verra_VCS", "GHG_Protocol"}))
        payload = Hasher.canonical_payload(policy)
        assert payload["allowed_methodologies"] == ["GHG_Protocol", "Verra_VCS"]
        assert payload["max_age"] == 31536000
        assert payload["max_value"] == "1000000000000"

    def test_chain_hash_depends_on_previous(self):
        payload = {"category": "biodiversity"}
        genesis = Hasher.hash_event(payload)
        chained = Hasher.hash_event(payload, genesis)
        assert genesis != chained
        assert Hasher.verify_chain(payload, chained, genesis)

    def test_chain_hash_validates_previous_hash_format(self):
        with pytest.raises(CanonicalSerializationError, match="Invalid previous_hash"):
            Hasher.hash_event({"a": 1}, "not-a-hash")


class TestClaimId:
    """Content-derived claim identifiers."""

    def test_golden_canonical_layout(self):
        canonical = Hasher.canonicalize({
            "profile_ref": "profile-001",
            "category": "carbon_reduction",
            "submitted_at": T0,
            "submitter": "0xsubmitter",
            "nonce": 0,
        })
        assert canonical == (
            '{"__canon_v":1,"category":"carbon_reduction","nonce":0,'
            '"profile_ref":"profile-001","submitted_at":"2024-01-15T12:30:45.000000Z",'
            '"submitter":"0xsubmitter"}'
        )

    def test_golden_claim_id(self):
        claim_id = Hasher.derive_claim_id(
            profile_ref="profile-001",
            category="carbon_reduction",
            submitted_at=T0,
            submitter="0xsubmitter",
            nonce=0,
        )
        assert claim_id == "2149f851144c051710e310ef0b5e7cbc35c462fbdabd18b33f3d6508f8f38ecf"

    def test_nonce_changes_id(self):
        claim_id = Hasher.derive_claim_id("profile-001", "carbon_reduction", T0, "0xsubmitter", 1)
        assert claim_id == "ee711c7dc03845d57c113f3bc01f497cdcff42d36417f8fdf322a498c0320dda"

    def test_negative_nonce_rejected(self):
        with pytest.raises(CanonicalSerializationError):
            Hasher.derive_claim_id("profile-001", "carbon_reduction", T0, "0xsubmitter", -1)

    def test_same_instant_submissions_get_distinct_ids(self, ledger):
        """Two identical submissions in the same instant do not collide."""
        first = ledger.submit_claim(SUBMITTER, make_draft())
        second = ledger.submit_claim(SUBMITTER, make_draft())

        assert first == "2149f851144c051710e310ef0b5e7cbc35c462fbdabd18b33f3d6508f8f38ecf"
        assert second == "ee711c7dc03845d57c113f3bc01f497cdcff42d36417f8fdf322a498c0320dda"
        assert ledger.claim_count == 2


class TestSigner:

    def test_sign_and_verify(self):
        private_key, public_key = Signer.generate_keypair()
        signature = Signer.sign_event("ab" * 32, private_key)
        assert Signer.verify_event("ab" * 32, signature, public_key)

    def test_wrong_key_fails(self):
        private_key, _ = Signer.generate_keypair()
        _, other_public = Signer.generate_keypair()
        signature = Signer.sign_event("ab" * 32, private_key)
        assert not Signer.verify_event("ab" * 32, signature, other_public)

    def test_garbage_signature_fails(self):
        _, public_key = Signer.generate_keypair()
        assert not Signer.verify_event("ab" * 32, "not base64!", public_key)

    def test_mismatched_keypair_rejected(self):
        private_key, _ = Signer.generate_keypair()
        _, other_public = Signer.generate_keypair()
        with pytest.raises(RuntimeError, match="do not match"):
            SigningService(KeyPair(private_key=private_key, public_key=other_public))


class TestAccessControl:

    def test_bootstrap_admin_only_once(self, ledger):
        with pytest.raises(UnauthorizedError):
            ledger.bootstrap_admin("mallory")

    def test_grant_requires_admin(self, ledger):
        with pytest.raises(UnauthorizedError):
            ledger.grant_role(VALIDATOR, Role.VALIDATOR, "someone")
        assert not ledger.has_role(Role.VALIDATOR, "someone")

    def test_grant_already_held_is_noop(self, ledger):
        count = ledger.event_count
        assert ledger.grant_role(ADMIN, Role.VALIDATOR, VALIDATOR.identity) is None
        assert ledger.event_count == count

    def test_roles_are_independent(self, ledger):
        """Admin does not imply Validator."""
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        with pytest.raises(UnauthorizedError):
            ledger.verify_claim(ADMIN, claim_id, 50)

    def test_grant_emits_event(self, ledger):
        event = ledger.grant_role(ADMIN, Role.ADMIN, "admin-2")
        assert event.event_type == AuditEventType.ROLE_GRANTED
        assert event.payload == {
            "granted_by": "admin",
            "identity": "admin-2",
            "role": "admin",
            "schema_version": 1,
        }
        assert ledger.has_role(Role.ADMIN, "admin-2")


class TestPolicyRegistry:

    def test_set_policy_requires_admin(self, ledger):
        count = ledger.event_count
        with pytest.raises(UnauthorizedError):
            ledger.set_policy(SUBMITTER, "biodiversity", carbon_policy())
        assert ledger.get_policy("biodiversity") is None
        assert ledger.event_count == count

    def test_set_policy_replaces_whole_record(self, ledger):
        ledger.add_unit(ADMIN, "carbon_reduction", "kgCO2e")
        ledger.set_policy(ADMIN, "carbon_reduction", carbon_policy())
        assert ledger.get_policy("carbon_reduction").allowed_units == frozenset({"tCO2e"})

    @pytest.mark.parametrize("max_age", [
        timedelta(milliseconds=500),
        timedelta(seconds=10, milliseconds=900),
    ])
    def test_sub_second_max_age_rejected(self, max_age):
        with pytest.raises(PydanticValidationError, match="whole number of seconds"):
            carbon_policy(max_age=max_age)

    def test_add_methodology_is_set_union(self, ledger):
        ledger.add_methodology(ADMIN, "carbon_reduction", "ISO_14064")
        ledger.add_methodology(ADMIN, "carbon_reduction", "ISO_14064")
        ledger.add_methodology(ADMIN, "carbon_reduction", "GHG_Protocol")

        assert ledger.get_policy("carbon_reduction").allowed_methodologies == \
            frozenset({"GHG_Protocol", "ISO_14064"})

    def test_add_unit_makes_unit_acceptable(self, ledger):
        with pytest.raises(InvalidUnitError):
            ledger.submit_claim(SUBMITTER, make_draft(unit="kgCO2e"))
        ledger.add_unit(ADMIN, "carbon_reduction", "kgCO2e")
        assert ledger.submit_claim(SUBMITTER, make_draft(unit="kgCO2e"))

    def test_add_unit_requires_admin(self, ledger):
        with pytest.raises(UnauthorizedError):
            ledger.add_unit(VALIDATOR, "carbon_reduction", "kgCO2e")
        with pytest.raises(UnauthorizedError):
            ledger.add_methodology(VALIDATOR, "carbon_reduction", "ISO_14064")

    def test_add_to_unrecorded_category_creates_inert_record(self, ledger):
        ledger.add_unit(ADMIN, "ocean_health", "km2")

        policy = ledger.get_policy("ocean_health")
        assert policy.allowed_units == frozenset({"km2"})
        assert policy.max_age == timedelta(0)
        assert not ledger.is_known_category("ocean_health")

        with pytest.raises(UnknownCategoryError):
            ledger.submit_claim(SUBMITTER, make_draft(category="ocean_health", unit="km2"))

    def test_empty_unit_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.add_unit(ADMIN, "carbon_reduction", "")

    def test_invalid_policy_bounds(self):
        with pytest.raises(ValueError):
            ValidationPolicy(min_value=Decimal("10"), max_value=Decimal("1"))

    def test_list_policies_sorted(self, ledger):
        ledger.set_policy(ADMIN, "biodiversity", carbon_policy())
        assert list(ledger.list_policies()) == ["biodiversity", "carbon_reduction"]


class TestSubmission:

    def test_carbon_scenario_submit(self, ledger):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft(value=Decimal("500")))

        claim = ledger.get_claim(claim_id)
        assert claim.claim_id == claim_id
        assert claim.verified is False
        assert claim.validator is None
        assert claim.confidence_score == 0
        assert claim.status == ClaimStatus.SUBMITTED
        assert claim.submitter == SUBMITTER.identity
        assert claim.submitted_at == T0

    def test_unregistered_unit(self, ledger):
        with pytest.raises(InvalidUnitError):
            ledger.submit_claim(SUBMITTER, make_draft(unit="lbsCO2e"))

    def test_unknown_category(self, ledger):
        with pytest.raises(UnknownCategoryError):
            ledger.submit_claim(SUBMITTER, make_draft(category="biodiversity"))

    def test_zero_max_age_is_unknown(self, ledger):
        ledger.set_policy(ADMIN, "carbon_reduction", carbon_policy(max_age=timedelta(0)))
        with pytest.raises(UnknownCategoryError):
            ledger.submit_claim(SUBMITTER, make_draft())

    def test_methodology_exact_match(self, ledger):
        with pytest.raises(InvalidMethodologyError):
            ledger.submit_claim(SUBMITTER, make_draft(methodology="ghg_protocol"))

    @pytest.mark.parametrize("value", ["-1", "1000000000001"])
    def test_out_of_range(self, ledger, value):
        with pytest.raises(OutOfRangePolicyError):
            ledger.submit_claim(SUBMITTER, make_draft(value=Decimal(value)))

    def test_bounds_inclusive(self, ledger):
        ledger.submit_claim(SUBMITTER, make_draft(value=Decimal("0")))
        ledger.submit_claim(SUBMITTER, make_draft(value=Decimal("1000000000000")))
        assert ledger.claim_count == 2

    def test_negative_rejected_even_in_range(self, ledger):
        ledger.set_policy(ADMIN, "carbon_reduction", carbon_policy(min_value=Decimal("-100")))
        with pytest.raises(OutOfRangePolicyError, match="Negative"):
            ledger.submit_claim(SUBMITTER, make_draft(value=Decimal("-5")))

    def test_negative_allowed_category(self, ledger):
        ledger.set_policy(ADMIN, "biodiversity", ValidationPolicy(
            min_value=Decimal("-100"),
            max_value=Decimal("100"),
            max_age=ONE_YEAR,
            allow_negative=True,
            allowed_units=frozenset({"species_count"}),
            allowed_methodologies=frozenset({"IUCN_Red_List"}),
        ))
        draft = make_draft(category="biodiversity", unit="species_count", methodology="IUCN_Red_List")

        assert ledger.submit_claim(SUBMITTER, draft.model_copy(update={"value": Decimal("-50")}))
        for value in ("-101", "101"):
            with pytest.raises(OutOfRangePolicyError):
                ledger.submit_claim(SUBMITTER, draft.model_copy(update={"value": Decimal(value)}))

    def test_check_order_unit_before_methodology(self, ledger):
        with pytest.raises(InvalidUnitError):
            ledger.submit_claim(SUBMITTER, make_draft(unit="lbs", methodology="nope"))

    def test_check_order_methodology_before_range(self, ledger):
        with pytest.raises(InvalidMethodologyError):
            ledger.submit_claim(SUBMITTER, make_draft(methodology="nope", value=Decimal("-1")))

    def test_rejection_leaves_no_trace(self, ledger):
        count = ledger.event_count
        with pytest.raises(InvalidUnitError):
            ledger.submit_claim(SUBMITTER, make_draft(unit="lbsCO2e"))
        assert ledger.event_count == count
        assert ledger.claim_count == 0
        # The nonce is not consumed by a rejected submission
        assert ledger.submit_claim(SUBMITTER, make_draft()) == \
            Hasher.derive_claim_id("profile-001", "carbon_reduction", T0, "0xsubmitter", 0)

    def test_submission_event(self, ledger):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        event = ledger.get_events()[-1]

        assert event.event_type == AuditEventType.CLAIM_SUBMITTED
        assert event.entity_id == claim_id
        assert event.actor == SUBMITTER.identity
        assert event.payload["claim_id"] == claim_id
        assert event.payload["profile_ref"] == "profile-001"
        assert event.payload["category"] == "carbon_reduction"
        assert event.payload["value"] == "500"

    def test_evidence_types_not_enforced(self, ledger):
        """Required evidence types are recorded only; intake does not check them."""
        assert ledger.submit_claim(SUBMITTER, make_draft(evidence_ref="no-types-here"))


class TestVerification:

    def test_carbon_scenario_verify_once(self, ledger, clock):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        clock.advance(days=30)

        verified = ledger.verify_claim(VALIDATOR, claim_id, 85)
        assert verified.verified is True
        assert verified.confidence_score == 85
        assert verified.validator == VALIDATOR.identity

        with pytest.raises(AlreadyVerifiedError):
            ledger.verify_claim(VALIDATOR, claim_id, 90)

        claim = ledger.get_claim(claim_id)
        assert claim.confidence_score == 85
        assert claim.status == ClaimStatus.VERIFIED

    @pytest.mark.parametrize("score", [101, -1])
    def test_invalid_score_no_mutation(self, ledger, score):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        count = ledger.event_count

        with pytest.raises(InvalidScoreError):
            ledger.verify_claim(VALIDATOR, claim_id, score)
        with pytest.raises(InvalidScoreError):
            ledger.verify_claim(VALIDATOR, "0" * 64, score)

        assert ledger.event_count == count
        assert ledger.get_claim(claim_id).verified is False

    def test_score_bounds_inclusive(self, ledger):
        low = ledger.submit_claim(SUBMITTER, make_draft())
        high = ledger.submit_claim(SUBMITTER, make_draft())
        assert ledger.verify_claim(VALIDATOR, low, 0).confidence_score == 0
        assert ledger.verify_claim(VALIDATOR, high, 100).confidence_score == 100

    def test_claim_not_found(self, ledger):
        with pytest.raises(ClaimNotFoundError):
            ledger.verify_claim(VALIDATOR, "0" * 64, 50)

    def test_verify_at_exact_max_age(self, ledger, clock):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        clock.advance(days=365)
        assert ledger.verify_claim(VALIDATOR, claim_id, 70).verified

    def test_verify_one_second_past_max_age(self, ledger, clock):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        clock.advance(days=365, seconds=1)
        with pytest.raises(ClaimTooOldError):
            ledger.verify_claim(VALIDATOR, claim_id, 70)
        assert ledger.get_claim(claim_id).verified is False

    def test_requires_validator(self, ledger):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        with pytest.raises(UnauthorizedError):
            ledger.verify_claim(SUBMITTER, claim_id, 50)

    def test_age_checked_before_authorization(self, ledger, clock):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        clock.advance(days=400)
        with pytest.raises(ClaimTooOldError):
            ledger.verify_claim(SUBMITTER, claim_id, 50)

    def test_verified_event(self, ledger, clock):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        clock.advance(hours=1)
        ledger.verify_claim(VALIDATOR, claim_id, 85)

        event = ledger.get_events()[-1]
        assert event.event_type == AuditEventType.CLAIM_VERIFIED
        assert event.payload == {
            "claim_id": claim_id,
            "confidence_score": 85,
            "schema_version": 1,
            "validator": "validator-1",
            "verified_at": "2024-01-15T13:30:45.000000Z",
        }

    def test_concurrent_verification_single_winner(self, ledger):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        validators = [AuthContext(identity=f"validator-{i}") for i in range(2, 10)]
        for ctx in validators:
            ledger.grant_role(ADMIN, Role.VALIDATOR, ctx.identity)

        barrier = threading.Barrier(len(validators))
        results = []
        results_lock = threading.Lock()

        def attempt(ctx: AuthContext, score: int):
            barrier.wait()
            try:
                ledger.verify_claim(ctx, claim_id, score)
                outcome = ("ok", ctx.identity, score)
            except AlreadyVerifiedError:
                outcome = ("already", ctx.identity, score)
            with results_lock:
                results.append(outcome)

        threads = [
            threading.Thread(target=attempt, args=(ctx, 50 + i))
            for i, ctx in enumerate(validators)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r[0] == "ok"]
        assert len(winners) == 1
        assert len(results) == len(validators)

        claim = ledger.get_claim(claim_id)
        assert (claim.validator, claim.confidence_score) == winners[0][1:]
        verified_events = [
            e for e in ledger.get_events() if e.event_type == AuditEventType.CLAIM_VERIFIED
        ]
        assert len(verified_events) == 1


class TestPolicyChangesDoNotRevalidate:

    def test_narrowed_policy_keeps_existing_claim(self, ledger):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft(value=Decimal("500")))
        ledger.set_policy(ADMIN, "carbon_reduction", carbon_policy(max_value=Decimal("100")))

        assert ledger.get_claim(claim_id).value == Decimal("500")
        assert ledger.verify_claim(VALIDATOR, claim_id, 60).verified
        with pytest.raises(OutOfRangePolicyError):
            ledger.submit_claim(SUBMITTER, make_draft(value=Decimal("500")))

    def test_retired_category_blocks_pending_verification(self, ledger, clock):
        claim_id = ledger.submit_claim(SUBMITTER, make_draft())
        ledger.set_policy(ADMIN, "carbon_reduction", carbon_policy(max_age=timedelta(0)))
        clock.advance(seconds=1)

        with pytest.raises(ClaimTooOldError):
            ledger.verify_claim(VALIDATOR, claim_id, 60)
        assert ledger.get_claim(claim_id) is not None


class TestValidationEngine:
    """The engine is pure; it can be driven without a ledger."""

    def test_missing_policy_is_unknown(self):
        with pytest.raises(UnknownCategoryError):
            ValidationEngine.evaluate_submission(make_draft(), None, "x", T0, 0)

    def test_non_finite_value(self):
        with pytest.raises(OutOfRangePolicyError):
            ValidationEngine.evaluate_submission(
                make_draft(value=Decimal("Infinity")), carbon_policy(), "x", T0, 0
            )


class TestStores:

    def test_claim_store_rejects_duplicate(self):
        store = InMemoryClaimStore()
        claim = ImpactClaim.from_draft(
            "a" * 64, make_draft(), submitter="x", submitted_at=T0, nonce=0
        )
        store.create(claim)
        with pytest.raises(DuplicateIdError):
            store.create(claim)

    def test_mark_verified_missing_claim(self):
        with pytest.raises(ClaimNotFoundError):
            InMemoryClaimStore().mark_verified("a" * 64, "v", 10)

    def test_exception_inside_append_leaves_log_unchanged(self, ledger):
        count = ledger.event_count
        with pytest.raises(RuntimeError):
            with ledger.audit_log.begin_append():
                raise RuntimeError("boom")
        assert ledger.event_count == count

    def test_commit_rejects_wrong_sequence(self, ledger):
        event = ledger.get_events()[0]
        with pytest.raises(ChainIntegrityError, match="Sequence mismatch"):
            with ledger.audit_log.begin_append() as ctx:
                ctx.commit(event)

    def test_load_into_non_empty_log(self, ledger):
        with pytest.raises(ChainIntegrityError):
            ledger.audit_log.load(ledger.get_events())


class TestChainIntegrity:

    @pytest.fixture
    def busy_ledger(self, ledger, clock):
        ledger.add_methodology(ADMIN, "carbon_reduction", "ISO_14064")
        ledger.add_unit(ADMIN, "ocean_health", "km2")
        first = ledger.submit_claim(SUBMITTER, make_draft())
        ledger.submit_claim(SUBMITTER, make_draft(value=Decimal("42.5")))
        clock.advance(days=10)
        ledger.verify_claim(VALIDATOR, first, 85)
        return ledger

    def test_chain_valid(self, busy_ledger):
        assert busy_ledger.verify_chain_integrity()
        events = busy_ledger.get_events()
        assert events[0].is_genesis
        assert events[0].previous_event_hash is None
        assert [e.sequence_number for e in events] == list(range(len(events)))
        for prev, event in zip(events, events[1:]):
            assert event.previous_event_hash == prev.event_hash

    def test_events_are_signed(self, busy_ledger, signing):
        for event in busy_ledger.get_events():
            assert signing.verify_event(event.event_hash, event.signature)

    def test_replay_equivalence(self, busy_ledger, signing, clock):
        replayed = ImpactLedger.load_from_events(
            busy_ledger.get_events(),
            public_key=signing.public_key,
            signing_service=signing,
            clock=clock,
        )

        def dump_policies(source):
            return {c: p.model_dump() for c, p in source.list_policies().items()}

        def dump_claims(source):
            return sorted((c.model_dump() for c in source.list_claims()), key=lambda c: c["claim_id"])

        assert dump_policies(replayed) == dump_policies(busy_ledger)
        assert replayed.access.members(Role.VALIDATOR) == busy_ledger.access.members(Role.VALIDATOR)
        assert replayed.access.members(Role.ADMIN) == busy_ledger.access.members(Role.ADMIN)
        assert dump_claims(replayed) == dump_claims(busy_ledger)
        assert replayed.last_event_hash == busy_ledger.last_event_hash
        assert replayed.verify_chain_integrity()

    def test_replay_keeps_exact_max_age(self, ledger, signing, clock):
        ledger.set_policy(ADMIN, "biodiversity", carbon_policy(max_age=timedelta(seconds=10)))
        replayed = ImpactLedger.load_from_events(
            ledger.get_events(), public_key=signing.public_key, signing_service=signing, clock=clock
        )
        for category, policy in ledger.list_policies().items():
            assert replayed.get_policy(category).model_dump() == policy.model_dump()
            assert replayed.get_policy(category).max_age == policy.max_age
        assert replayed.is_known_category("biodiversity")

    def test_replay_after_json_round_trip(self, busy_ledger, signing):
        exported = json.dumps([e.model_dump(mode="json") for e in busy_ledger.get_events()])
        events = [AuditEvent.model_validate(raw) for raw in json.loads(exported)]

        replayed = ImpactLedger.load_from_events(
            events, public_key=signing.public_key, signing_service=signing
        )
        assert replayed.claim_count == busy_ledger.claim_count

    def test_replayed_ledger_continues_nonce(self, busy_ledger, signing, clock):
        replayed = ImpactLedger.load_from_events(
            busy_ledger.get_events(), signing_service=signing, clock=clock
        )
        existing = {c.claim_id for c in busy_ledger.list_claims()}
        clock.now = T0
        new_id = replayed.submit_claim(SUBMITTER, make_draft())
        assert new_id not in existing
        assert replayed.verify_chain_integrity()

    def test_tampered_payload_detected(self, busy_ledger):
        events = busy_ledger.get_events()
        index = next(
            i for i, e in enumerate(events) if e.event_type == AuditEventType.CLAIM_SUBMITTED
        )
        events[index] = events[index].model_copy(
            update={"payload": {**events[index].payload, "value": "999999"}}
        )

        with pytest.raises(ChainError, match="Hash verification failed"):
            ImpactLedger.load_from_events(events)

    def test_missing_event_detected(self, busy_ledger):
        events = busy_ledger.get_events()
        del events[3]
        with pytest.raises(ChainError, match="Sequence number gap"):
            ImpactLedger.load_from_events(events)

    def test_foreign_signature_detected(self, busy_ledger, signing):
        events = busy_ledger.get_events()
        other_private, _ = Signer.generate_keypair()
        events[1] = events[1].model_copy(
            update={"signature": Signer.sign_event(events[1].event_hash, other_private)}
        )

        with pytest.raises(ChainError, match="Signature verification failed"):
            ImpactLedger.load_from_events(events, public_key=signing.public_key)

        # Without a key only linkage and hashes are checked
        assert ImpactLedger.load_from_events(events, signing_service=signing).event_count == len(events)


class TestObservability:

    def test_rejection_logged_and_counted(self, ledger, caplog):
        before = get_metrics().rejections["InvalidUnit"]
        caplog.set_level(logging.INFO, logger="impactledger.core.ledger")

        with pytest.raises(InvalidUnitError):
            ledger.submit_claim(SUBMITTER, make_draft(unit="lbsCO2e"))

        assert get_metrics().rejections["InvalidUnit"] == before + 1
        records = [r for r in caplog.records if r.getMessage() == "submit_claim rejected"]
        assert records
        assert records[-1].levelno == logging.INFO
        assert records[-1].code == "InvalidUnit"

    def test_submission_counted(self, ledger):
        before = get_metrics().claims_submitted
        ledger.submit_claim(SUBMITTER, make_draft())
        assert get_metrics().claims_submitted == before + 1


class TestBootstrap:

    def test_config_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("IMPACTLEDGER_BOOTSTRAP_ADMIN", "root")
        monkeypatch.setenv("IMPACTLEDGER_BOOTSTRAP_VALIDATORS", "v1, v2,,")
        monkeypatch.setenv("IMPACTLEDGER_POLICY_FILE", str(tmp_path / "p.json"))
        monkeypatch.setenv("IMPACTLEDGER_SEED_POLICIES", "false")

        config = LedgerConfig.from_env()
        assert config.bootstrap_admin == "root"
        assert config.bootstrap_validators == ["v1", "v2"]
        assert config.policy_file == tmp_path / "p.json"
        assert config.seed_policies is False

    def test_bundled_policy_file(self):
        policies = load_policy_file()
        assert policies["carbon_reduction"].allowed_units == frozenset({"tCO2e"})
        assert policies["carbon_reduction"].max_age == ONE_YEAR
        assert policies["biodiversity"].allow_negative is True

    def test_policy_file_rejects_floats(self, tmp_path):
        path = tmp_path / "policies.json"
        path.write_text('{"policies": {"x": {"max_value": 1.5}}}', encoding="utf-8")
        with pytest.raises(PolicyFileError, match="Float"):
            load_policy_file(path)

    def test_create_ledger_seeds_through_audit(self, signing, clock):
        config = LedgerConfig(bootstrap_admin="root", bootstrap_validators=["v1"])
        ledger = create_ledger(config, signing_service=signing, clock=clock)

        seeded = load_policy_file()
        assert set(ledger.list_policies()) == set(seeded)
        assert ledger.has_role(Role.ADMIN, "root")
        assert ledger.has_role(Role.VALIDATOR, "v1")
        # bootstrap admin + validator grant + one event per policy
        assert ledger.event_count == 2 + len(seeded)
        assert ledger.verify_chain_integrity()

    def test_create_ledger_without_seed(self, signing, clock):
        config = LedgerConfig(seed_policies=False)
        ledger = create_ledger(config, signing_service=signing, clock=clock)
        assert ledger.list_policies() == {}
        assert ledger.event_count == 1

    def test_create_ledger_fails_on_unseedable_policy(self, signing, clock, tmp_path):
        path = tmp_path / "policies.json"
        path.write_text(
            '{"policies": {"": {"max_age": 60}, "water": {"max_age": 60}}}', encoding="utf-8"
        )
        config = LedgerConfig(policy_file=path)
        with pytest.raises(PolicyFileError, match="Category tag must not be empty"):
            create_ledger(config, signing_service=signing, clock=clock)

    def test_production_requires_system_key(self, monkeypatch):
        monkeypatch.setenv("IMPACTLEDGER_PRODUCTION", "true")
        monkeypatch.delenv("IMPACTLEDGER_SYSTEM_PRIVATE_KEY", raising=False)
        monkeypatch.delenv("IMPACTLEDGER_SYSTEM_PUBLIC_KEY", raising=False)
        with pytest.raises(RuntimeError, match="must be set in production"):
            SigningService.from_env()

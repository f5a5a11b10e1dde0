"""
API Routes for the Impact Ledger

The caller identity comes from the X-Actor-Id header; its roles are looked
up in the ledger's role table.

Command endpoints:
- POST /claims                          - Submit a claim
- POST /claims/{id}/verify              - Verify a claim (Validator)
- PUT  /policies/{category}             - Replace a category policy (Admin)
- POST /policies/{category}/units       - Allow a unit (Admin)
- POST /policies/{category}/methodologies - Allow a methodology (Admin)
- POST /roles                           - Grant a role (Admin)

Query endpoints:
- GET /claims/{id}                      - Claim details
- GET /policies                         - All category policies
- GET /policies/{category}              - One category policy
- GET /events                           - Notification stream for replay

Errors are returned as {"error": <code>, "detail": <message>}.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.errors import (
    AlreadyVerifiedError,
    ClaimNotFoundError,
    DuplicateIdError,
    LedgerError,
    UnauthorizedError,
)
from ..core.ledger import ImpactLedger
from ..observability import ACTOR_HEADER, actor_id_var, get_logger
from ..schemas import (
    AuditEvent,
    AuthContext,
    ClaimDraft,
    ClaimStatus,
    ImpactClaim,
    Role,
    ValidationPolicy,
)

logger = get_logger(__name__)

router = APIRouter()


# ============================================================
# Dependency Injection
# ============================================================

class MissingActorError(LedgerError):
    """Request carried no caller identity."""
    code = "MissingActor"


def get_ledger(request: Request) -> ImpactLedger:
    return request.app.state.ledger


def get_auth_context(
    x_actor_id: Optional[str] = Header(default=None, alias=ACTOR_HEADER),
) -> AuthContext:
    """Build the caller's AuthContext from the actor header."""
    identity = (x_actor_id or "").strip()
    if not identity:
        raise MissingActorError(f"Missing {ACTOR_HEADER} header")
    actor_id_var.set(identity)
    return AuthContext(identity=identity)


# ============================================================
# Error Mapping
# ============================================================

_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (MissingActorError, status.HTTP_401_UNAUTHORIZED),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (ClaimNotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyVerifiedError, status.HTTP_409_CONFLICT),
    (DuplicateIdError, status.HTTP_409_CONFLICT),
]


def status_for_error(error: Exception) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def error_body(code: str, detail: str) -> dict:
    return {"error": code, "detail": detail}


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for_error(exc),
        content=error_body(exc.code, str(exc)),
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("InvalidArgument", str(exc)),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)


# ============================================================
# Request/Response Models
# ============================================================

class SubmitClaimResponse(BaseModel):
    claim_id: str


class VerifyClaimRequest(BaseModel):
    """Range is checked by the ledger so out-of-range scores map to InvalidScore."""
    confidence_score: int


class ClaimResponse(BaseModel):
    """Response containing claim details."""
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
    status: ClaimStatus
    verified: bool
    validator: Optional[str] = None
    confidence_score: int

    @classmethod
    def from_claim(cls, claim: ImpactClaim) -> "ClaimResponse":
        return cls(
            status=claim.status,
            **claim.model_dump(exclude={"nonce"}),
        )


class EventResponse(BaseModel):
    """Response containing an audit event reference."""
    event_id: UUID
    sequence_number: int
    event_type: str
    entity_id: str
    event_hash: str
    actor: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "EventResponse":
        return cls(
            event_id=event.event_id,
            sequence_number=event.sequence_number,
            event_type=event.event_type.value,
            entity_id=event.entity_id,
            event_hash=event.event_hash,
            actor=event.actor,
            created_at=event.created_at,
        )


class PolicyResponse(BaseModel):
    category: str
    known: bool
    policy: ValidationPolicy


class PolicyChangeResponse(PolicyResponse):
    event: EventResponse


class AddUnitRequest(BaseModel):
    unit: str = Field(..., min_length=1)


class AddMethodologyRequest(BaseModel):
    methodology: str = Field(..., min_length=1)


class GrantRoleRequest(BaseModel):
    role: Role
    identity: str = Field(..., min_length=1)


class GrantRoleResponse(BaseModel):
    granted: bool
    role: Role
    identity: str
    event: Optional[EventResponse] = None


class EventStreamResponse(BaseModel):
    """The notification stream, with the key its signatures verify against."""
    event_count: int
    public_key: str
    events: list[AuditEvent]


def _policy_response(ledger: ImpactLedger, category: str) -> PolicyResponse:
    policy = ledger.get_policy(category) or ValidationPolicy()
    return PolicyResponse(category=category, known=policy.is_known, policy=policy)


# ============================================================
# Claim Endpoints
# ============================================================

@router.post(
    "/claims",
    response_model=SubmitClaimResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Claims"],
    summary="Submit an impact claim",
)
async def submit_claim(
    draft: ClaimDraft,
    ctx: AuthContext = Depends(get_auth_context),
    ledger: ImpactLedger = Depends(get_ledger),
):
    """
    Validate a claim against its category policy and record it.

    Any identity may submit. The claim starts unverified.
    """
    claim_id = ledger.submit_claim(ctx, draft)
    return SubmitClaimResponse(claim_id=claim_id)


@router.post(
    "/claims/{claim_id}/verify",
    response_model=ClaimResponse,
    tags=["Claims"],
    summary="Verify a claim",
)
async def verify_claim(
    claim_id: str,
    request: VerifyClaimRequest,
    ctx: AuthContext = Depends(get_auth_context),
    ledger: ImpactLedger = Depends(get_ledger),
):
    """
    Confirm a claim with a confidence score (0-100).

    Validator-only. A claim can be verified exactly once.
    """
    claim = ledger.verify_claim(ctx, claim_id, request.confidence_score)
    return ClaimResponse.from_claim(claim)


@router.get(
    "/claims/{claim_id}",
    response_model=ClaimResponse,
    tags=["Claims"],
)
async def get_claim(
    claim_id: str,
    ledger: ImpactLedger = Depends(get_ledger),
):
    claim = ledger.get_claim(claim_id)
    if claim is None:
        raise ClaimNotFoundError(f"Claim {claim_id} does not exist")
    return ClaimResponse.from_claim(claim)


# ============================================================
# Policy Endpoints
# ============================================================

@router.get(
    "/policies",
    response_model=list[PolicyResponse],
    tags=["Policies"],
)
async def list_policies(ledger: ImpactLedger = Depends(get_ledger)):
    return [
        PolicyResponse(category=category, known=policy.is_known, policy=policy)
        for category, policy in ledger.list_policies().items()
    ]


@router.get(
    "/policies/{category}",
    response_model=PolicyResponse,
    tags=["Policies"],
)
async def get_policy(category: str, ledger: ImpactLedger = Depends(get_ledger)):
    """
    Read a category policy.

    Categories with no record return the zero policy (known=false).
    """
    return _policy_response(ledger, category)


@router.put(
    "/policies/{category}",
    response_model=PolicyChangeResponse,
    tags=["Policies"],
    summary="Replace a category policy",
)
async def set_policy(
    category: str,
    policy: ValidationPolicy,
    ctx: AuthContext = Depends(get_auth_context),
    ledger: ImpactLedger = Depends(get_ledger),
):
    """
    Replace the whole policy record (no merge). Admin-only.

    Existing claims are not re-validated.
    """
    event = ledger.set_policy(ctx, category, policy)
    return PolicyChangeResponse(
        **_policy_response(ledger, category).model_dump(),
        event=EventResponse.from_event(event),
    )


@router.post(
    "/policies/{category}/units",
    response_model=PolicyChangeResponse,
    tags=["Policies"],
)
async def add_unit(
    category: str,
    request: AddUnitRequest,
    ctx: AuthContext = Depends(get_auth_context),
    ledger: ImpactLedger = Depends(get_ledger),
):
    event = ledger.add_unit(ctx, category, request.unit)
    return PolicyChangeResponse(
        **_policy_response(ledger, category).model_dump(),
        event=EventResponse.from_event(event),
    )


@router.post(
    "/policies/{category}/methodologies",
    response_model=PolicyChangeResponse,
    tags=["Policies"],
)
async def add_methodology(
    category: str,
    request: AddMethodologyRequest,
    ctx: AuthContext = Depends(get_auth_context),
    ledger: ImpactLedger = Depends(get_ledger),
):
    event = ledger.add_methodology(ctx, category, request.methodology)
    return PolicyChangeResponse(
        **_policy_response(ledger, category).model_dump(),
        event=EventResponse.from_event(event),
    )


# ============================================================
# Access Control & Audit Stream
# ============================================================

@router.post(
    "/roles",
    response_model=GrantRoleResponse,
    tags=["Access"],
    summary="Grant a role",
)
async def grant_role(
    request: GrantRoleRequest,
    ctx: AuthContext = Depends(get_auth_context),
    ledger: ImpactLedger = Depends(get_ledger),
):
    """Admin-only. Granting a role already held is a no-op (granted=false)."""
    event = ledger.grant_role(ctx, request.role, request.identity)
    return GrantRoleResponse(
        granted=event is not None,
        role=request.role,
        identity=request.identity,
        event=EventResponse.from_event(event) if event else None,
    )


@router.get(
    "/events",
    response_model=EventStreamResponse,
    tags=["Audit"],
)
async def get_events(
    entity_id: Optional[str] = None,
    ledger: ImpactLedger = Depends(get_ledger),
):
    """
    The notification stream, in sequence order.

    The unfiltered stream can be fed to `tools/manage.py replay`.
    """
    events = (
        ledger.get_events_for_entity(entity_id) if entity_id else ledger.get_events()
    )
    return EventStreamResponse(
        event_count=len(events),
        public_key=ledger.public_key,
        events=events,
    )

"""
Stores

- AuditLog: append-only, hash-chained notification stream. Its append
  lock is the ledger's single global critical section.
- ClaimStore: claims keyed by content-derived identifier.

Only in-memory implementations ship. Durable backends implement the same
abstract interfaces.

TRANSACTION CONTRACT:
Every state-mutating ledger operation runs inside begin_append():

    with audit_log.begin_append() as ctx:
        # validate everything, raising on the first failure
        event = build_event(ctx.head.next_sequence, ctx.head.last_event_hash, ...)
        ctx.commit(event)
        # apply the claim/policy/role write (cannot fail at this point)

An exception before commit releases the lock and leaves no trace.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Generator, Optional

from ..core.errors import ClaimNotFoundError, DuplicateIdError
from ..core.hasher import Hasher
from ..schemas import AuditEvent, ImpactClaim


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for store errors."""
    pass


class ChainIntegrityError(StoreError):
    """Raised when an append would break the audit chain."""
    pass


# ============================================================
# AUDIT LOG
# ============================================================

@dataclass
class ChainHead:
    """Current state of the audit chain head."""
    last_sequence: int  # -1 means empty log
    last_event_hash: Optional[str]

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class AppendContext:
    """
    Transaction context for one ledger mutation.

    Holds the chain head observed when the lock was taken. At most one
    event is committed per context.
    """
    head: ChainHead
    _store: "AuditLog"
    _token: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    @property
    def committed(self) -> bool:
        return self._committed

    def commit(self, event: AuditEvent) -> AuditEvent:
        if self._committed:
            raise StoreError("Transaction already committed")
        if self._rolled_back:
            raise StoreError("Transaction already rolled back")

        result = self._store._do_commit(self, event)
        self._committed = True
        return result

    def rollback(self) -> None:
        if not self._committed and not self._rolled_back:
            self._rolled_back = True


class AuditLog(ABC):
    """
    Append-only notification stream.

    Implementations must ensure:
    1. begin_append() serializes all writers
    2. No gaps or duplicates in sequence numbers
    3. Chain linkage is always correct
    """

    @contextmanager
    @abstractmethod
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """Acquire the append lock and yield the current head."""
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, event: AuditEvent) -> AuditEvent:
        """Internal: persist within the current context. Use ctx.commit()."""
        pass

    @abstractmethod
    def list_all(self) -> list[AuditEvent]:
        """All events ordered by sequence number."""
        pass

    @abstractmethod
    def list_for_entity(self, entity_id: str) -> list[AuditEvent]:
        pass

    @abstractmethod
    def get_head(self) -> ChainHead:
        """Current head, without locking."""
        pass

    @abstractmethod
    def get_event_count(self) -> int:
        pass

    @staticmethod
    def _check_append(head: ChainHead, event: AuditEvent) -> None:
        """Shared append validation: sequence, linkage and hash."""
        expected_sequence = head.next_sequence

        if event.sequence_number != expected_sequence:
            raise ChainIntegrityError(
                f"Sequence mismatch: expected {expected_sequence}, "
                f"got {event.sequence_number}"
            )

        if expected_sequence == 0:
            if event.previous_event_hash is not None:
                raise ChainIntegrityError(
                    "Genesis event must have previous_event_hash=None"
                )
        elif event.previous_event_hash != head.last_event_hash:
            raise ChainIntegrityError(
                f"Previous hash mismatch: expected {head.last_event_hash}, "
                f"got {event.previous_event_hash}"
            )

        computed_hash = Hasher.hash_event(event.payload, event.previous_event_hash)
        if computed_hash != event.event_hash:
            raise ChainIntegrityError(
                f"Hash verification failed: computed {computed_hash[:16]}..., "
                f"claimed {event.event_hash[:16]}..."
            )


class InMemoryAuditLog(AuditLog):
    """
    In-memory audit log guarded by a process-wide lock.

    Suitable for development, tests and single-process deployments.
    """

    _LOCK_TOKEN = "in_memory_lock"

    def __init__(self):
        self._events: list[AuditEvent] = []
        self._head = ChainHead(last_sequence=-1, last_event_hash=None)
        self._lock = Lock()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        with self._lock:
            ctx = AppendContext(
                head=ChainHead(
                    last_sequence=self._head.last_sequence,
                    last_event_hash=self._head.last_event_hash,
                ),
                _store=self,
                _token=self._LOCK_TOKEN,
            )
            try:
                yield ctx
            except BaseException:
                ctx.rollback()
                raise
            finally:
                ctx._token = None

    def _do_commit(self, ctx: AppendContext, event: AuditEvent) -> AuditEvent:
        if ctx._token != self._LOCK_TOKEN:
            raise StoreError("commit called outside begin_append context")

        self._check_append(self._head, event)

        self._events.append(event)
        self._head = ChainHead(
            last_sequence=event.sequence_number,
            last_event_hash=event.event_hash,
        )
        return event

    def list_all(self) -> list[AuditEvent]:
        return list(self._events)

    def list_for_entity(self, entity_id: str) -> list[AuditEvent]:
        return [e for e in self._events if e.entity_id == entity_id]

    def get_head(self) -> ChainHead:
        head = self._head
        return ChainHead(
            last_sequence=head.last_sequence,
            last_event_hash=head.last_event_hash,
        )

    def get_event_count(self) -> int:
        return len(self._events)

    def load(self, events: list[AuditEvent]) -> None:
        """
        Bulk-load an already verified stream into an empty log.

        Raises ChainIntegrityError if the log is not empty or the stream
        does not chain.
        """
        with self._lock:
            if self._events:
                raise ChainIntegrityError("Cannot load events into a non-empty audit log")
            head = ChainHead(last_sequence=-1, last_event_hash=None)
            for event in events:
                self._check_append(head, event)
                head = ChainHead(
                    last_sequence=event.sequence_number,
                    last_event_hash=event.event_hash,
                )
            self._events = list(events)
            self._head = head


# ============================================================
# CLAIM STORE
# ============================================================

class ClaimStore(ABC):
    """
    Claims keyed by content-derived identifier.

    Writes are only issued from inside the audit log's append context, so
    the store itself needs no transaction handling. Reads never block.
    """

    @abstractmethod
    def create(self, claim: ImpactClaim) -> None:
        """Insert a new claim. Raises DuplicateIdError if the id exists."""
        pass

    @abstractmethod
    def get(self, claim_id: str) -> Optional[ImpactClaim]:
        pass

    @abstractmethod
    def mark_verified(self, claim_id: str, validator: str, confidence_score: int) -> ImpactClaim:
        """Apply the single SUBMITTED → VERIFIED transition."""
        pass

    @abstractmethod
    def list_all(self) -> list[ImpactClaim]:
        pass

    def exists(self, claim_id: str) -> bool:
        return self.get(claim_id) is not None

    def count(self) -> int:
        return len(self.list_all())


class InMemoryClaimStore(ClaimStore):
    """Dict-backed claim store holding frozen ImpactClaim models."""

    def __init__(self):
        self._claims: dict[str, ImpactClaim] = {}

    def create(self, claim: ImpactClaim) -> None:
        if claim.claim_id in self._claims:
            raise DuplicateIdError(f"Claim {claim.claim_id} already exists")
        self._claims[claim.claim_id] = claim

    def get(self, claim_id: str) -> Optional[ImpactClaim]:
        return self._claims.get(claim_id)

    def mark_verified(self, claim_id: str, validator: str, confidence_score: int) -> ImpactClaim:
        claim = self._claims.get(claim_id)
        if claim is None:
            raise ClaimNotFoundError(f"Claim {claim_id} does not exist")
        verified = claim.as_verified(validator, confidence_score)
        self._claims[claim_id] = verified
        return verified

    def list_all(self) -> list[ImpactClaim]:
        return list(self._claims.values())

    def count(self) -> int:
        return len(self._claims)

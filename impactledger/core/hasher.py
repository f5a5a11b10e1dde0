"""
Canonical Hashing

Claim identifiers and audit event hashes are published to external
indexers, so the bytes that feed SHA-256 are fixed here and versioned.

Canonical form of a payload:
- "__canon_v" carries the format version and sorts first
- keys sorted recursively, None values dropped, empty values kept
- datetimes must be timezone-aware; written as UTC with microseconds
  and a Z suffix (2024-01-15T12:30:45.000000Z)
- dates as YYYY-MM-DD, timedeltas as whole seconds (int)
- UUIDs lowercase, Enums by value, Decimals via str()
- floats, sets, bytes and NaN/Infinity are rejected
- compact JSON, ASCII only; the top level must be an object

Claim identifier:

    claim_id = hex(sha256(canonical({category, nonce, profile_ref,
                                     submitted_at, submitter})))

The nonce is the ledger's submission counter, so two otherwise identical
submissions in the same instant still get distinct identifiers.

Event hash:

    genesis: sha256(canonical(payload))
    chained: sha256(previous_hash + ":" + canonical(payload))
"""

import hashlib
import hmac
import json
import string
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


_HEX_DIGITS = frozenset(string.hexdigits.lower())

_REJECTED_TYPES = (
    (float, "float", "Use Decimal for claim values."),
    ((set, frozenset), "set", "Sets have no stable ordering; pass a sorted list."),
    ((bytes, bytearray), "bytes", "Encode as a hex string first."),
)


class Hasher:
    """
    Canonical serialization and SHA-256 hashing.

    Output for a given logical input never changes. A change to the
    rules requires bumping SERIALIZATION_VERSION.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None or isinstance(value, (bool, int, str)) and not isinstance(value, Enum):
            return value

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, datetime):
            return cls._utc_timestamp(value, path)

        if isinstance(value, date):
            return value.isoformat()

        if isinstance(value, timedelta):
            if value.microseconds:
                raise CanonicalSerializationError(
                    f"Timedelta at {path} has sub-second precision; "
                    "durations are whole seconds."
                )
            return value.days * 86400 + value.seconds

        if isinstance(value, Decimal):
            if not value.is_finite():
                raise CanonicalSerializationError(f"Cannot serialize non-finite Decimal at {path}.")
            return str(value)

        if isinstance(value, UUID):
            return str(value)

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        if isinstance(value, (list, tuple)):
            return [cls._serialize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]

        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        for types, label, hint in _REJECTED_TYPES:
            if isinstance(value, types):
                raise CanonicalSerializationError(f"Cannot serialize {label} at {path}. {hint}")

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}; "
            "only JSON-compatible types are allowed."
        )

    @staticmethod
    def _utc_timestamp(dt: datetime, path: str) -> str:
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "Attach a timezone, e.g. datetime.now(timezone.utc)."
            )
        return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        result = {}
        for key, value in data.items():
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path or '<root>'} must be str, got {type(key).__name__}"
                )
            serialized = cls._serialize_value(value, f"{path}.{key}" if path else key)
            if serialized is not None:
                result[key] = serialized
        return dict(sorted(result.items()))

    @classmethod
    def canonical_payload(cls, data: dict[str, Any] | Any) -> dict[str, Any]:
        """
        Reduce a dict or pydantic model to its canonical dict form.

        The result holds only str/int/bool/list/dict values, so it survives
        a JSON round trip unchanged and hashes identically afterwards.
        Audit event payloads are stored in this form.
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Canonical form requires an object at the top level, got {type(data).__name__}"
            )
        return cls._to_canonical_dict(data)

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """Canonical JSON text of `data`, version key included."""
        body = {"__canon_v": cls.SERIALIZATION_VERSION, **cls.canonical_payload(data)}
        return json.dumps(
            body,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """Lowercase hex SHA-256 of the canonical form."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def derive_claim_id(
        cls,
        profile_ref: str,
        category: str,
        submitted_at: datetime,
        submitter: str,
        nonce: int,
    ) -> str:
        """Content-derived claim identifier; see the module docstring for the layout."""
        if nonce < 0:
            raise CanonicalSerializationError(f"Submission nonce must be non-negative, got {nonce}")
        return cls.hash_data({
            "category": category,
            "nonce": nonce,
            "profile_ref": profile_ref,
            "submitted_at": submitted_at,
            "submitter": submitter,
        })

    @staticmethod
    def is_valid_hash(value: str) -> bool:
        """True for a 64-character hex digest (any case)."""
        return len(value) == 64 and set(value.lower()) <= _HEX_DIGITS

    @classmethod
    def hash_event(cls, payload: dict[str, Any], previous_hash: str | None = None) -> str:
        """Chained hash of an audit event payload."""
        canonical = cls.canonicalize(payload)
        if previous_hash is not None:
            if not cls.is_valid_hash(previous_hash):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash!r}; expected 64 hex characters."
                )
            canonical = f"{previous_hash.lower()}:{canonical}"
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def verify_chain(
        cls,
        payload: dict[str, Any],
        expected_hash: str,
        previous_hash: str | None = None
    ) -> bool:
        """Whether `payload` hashes to `expected_hash` after `previous_hash`."""
        try:
            computed = cls.hash_event(payload, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())

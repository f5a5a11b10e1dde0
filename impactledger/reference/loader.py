"""
Reference Policy Loader

Loads per-category validation policies from a JSON data file and applies
them to a ledger through set_policy, so seeding is itself audited.

This allows:
- Policy changes to be reviewed as JSON diffs
- Deployments to ship their own policy file (IMPACTLEDGER_POLICY_FILE)

File format:
    {
      "schema_version": 1,
      "policies": {
        "<category>": {
          "min_value": "0", "max_value": "1000", "max_age": 31536000,
          "allow_negative": false, "required_evidence_types": [...],
          "allowed_units": [...], "allowed_methodologies": [...]
        }
      }
    }

Numbers are strings or integers; floats are rejected. max_age is seconds.

Usage:
    from impactledger.reference.loader import seed_policies
    result = seed_policies(ledger, AuthContext(identity="admin"))
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..config import DEFAULT_POLICY_FILE
from ..observability import get_logger
from ..schemas import AuthContext, ValidationPolicy

logger = get_logger(__name__)

SUPPORTED_SCHEMA_VERSION = 1


class PolicyFileError(ValueError):
    """Raised when a policy file cannot be read or has the wrong shape."""
    pass


def _reject_float(raw: str):
    raise PolicyFileError(
        f"Float literal {raw} in policy file. Use a string or integer."
    )


def load_policy_file(path: Union[str, Path, None] = None) -> dict[str, ValidationPolicy]:
    """
    Load and parse a policy file.

    Returns:
        Category → ValidationPolicy, in file order.
    """
    path = Path(path) if path is not None else DEFAULT_POLICY_FILE
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f, parse_float=_reject_float)
    except OSError as e:
        raise PolicyFileError(f"Cannot read policy file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise PolicyFileError(f"Policy file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("policies"), dict):
        raise PolicyFileError(f"Policy file {path} must contain a 'policies' object")

    version = data.get("schema_version", SUPPORTED_SCHEMA_VERSION)
    if version != SUPPORTED_SCHEMA_VERSION:
        raise PolicyFileError(
            f"Unsupported policy file schema_version {version} "
            f"(expected {SUPPORTED_SCHEMA_VERSION})"
        )

    policies: dict[str, ValidationPolicy] = {}
    for category, raw in data["policies"].items():
        try:
            policies[category] = ValidationPolicy.model_validate(raw)
        except PydanticValidationError as e:
            raise PolicyFileError(f"Invalid policy for category '{category}': {e}") from e
    return policies


@dataclass
class SeedResult:
    """Result of seeding policies."""
    applied: list[str] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)  # (category, message)

    @property
    def ok(self) -> bool:
        return not self.errors


def seed_policies(
    ledger,
    ctx: AuthContext,
    path: Union[str, Path, None] = None,
    policies: Optional[dict[str, ValidationPolicy]] = None,
) -> SeedResult:
    """
    Apply every policy in the file as ctx (must hold Admin).

    A category that fails to apply is recorded in the result; the rest are
    still applied.
    """
    from ..core.errors import LedgerError

    if policies is None:
        policies = load_policy_file(path)

    result = SeedResult()
    for category, policy in policies.items():
        try:
            ledger.set_policy(ctx, category, policy)
            result.applied.append(category)
        except (LedgerError, ValueError) as e:
            result.errors.append((category, str(e)))
            logger.warning("Policy seed failed", category=category, error=str(e))

    logger.info(
        "Policies seeded",
        applied=len(result.applied),
        failed=len(result.errors),
        source=str(path or DEFAULT_POLICY_FILE),
    )
    return result


def policy_to_json(policy: ValidationPolicy) -> dict:
    """Policy in the file/wire form (Decimals as strings, max_age in seconds)."""
    data = policy.model_dump(mode="python")
    return {
        key: str(value) if isinstance(value, Decimal) else value
        for key, value in data.items()
    }

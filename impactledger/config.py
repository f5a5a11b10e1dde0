"""
Ledger Configuration

Environment Variables:
    IMPACTLEDGER_PRODUCTION: Enable production mode (1/true/yes)
    IMPACTLEDGER_BOOTSTRAP_ADMIN: Identity granted the Admin role at
        initialization (default "admin")
    IMPACTLEDGER_BOOTSTRAP_VALIDATORS: Comma-separated identities granted
        the Validator role at initialization
    IMPACTLEDGER_POLICY_FILE: JSON file with the initial per-category
        policies (default: bundled reference/policies.json)
    IMPACTLEDGER_SEED_POLICIES: Apply the policy file at startup
        (default true)

Logging and signing keys are configured in observability.py and
core/signing_service.py respectively.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_POLICY_FILE = Path(__file__).parent / "reference" / "policies.json"

_TRUTHY = ("1", "true", "yes")


def is_production() -> bool:
    return os.environ.get("IMPACTLEDGER_PRODUCTION", "").lower() in _TRUTHY


def _split_identities(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class LedgerConfig:
    """Startup configuration for an ImpactLedger instance."""
    bootstrap_admin: str = "admin"
    bootstrap_validators: list[str] = field(default_factory=list)
    policy_file: Optional[Path] = DEFAULT_POLICY_FILE
    seed_policies: bool = True

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from IMPACTLEDGER_* environment variables."""
        policy_file = os.getenv("IMPACTLEDGER_POLICY_FILE")
        admin = os.getenv("IMPACTLEDGER_BOOTSTRAP_ADMIN", "admin").strip()
        if not admin:
            raise ValueError("IMPACTLEDGER_BOOTSTRAP_ADMIN must not be empty")

        return cls(
            bootstrap_admin=admin,
            bootstrap_validators=_split_identities(
                os.getenv("IMPACTLEDGER_BOOTSTRAP_VALIDATORS", "")
            ),
            policy_file=Path(policy_file) if policy_file else DEFAULT_POLICY_FILE,
            seed_policies=os.getenv("IMPACTLEDGER_SEED_POLICIES", "true").lower() in _TRUTHY,
        )

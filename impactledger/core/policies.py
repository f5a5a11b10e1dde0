"""
Policy Registry

Per-category ValidationPolicy records, keyed by category tag.

Rules:
- Only Admin may mutate
- set_policy replaces the whole record (no merge)
- add_unit / add_methodology use set-union semantics
- No deletion; a category is retired by setting max_age to zero
- Changing a policy never re-validates claims already stored
"""

from threading import Lock
from typing import Optional

from ..schemas import AuthContext, Role, ValidationPolicy
from .access import AccessControl


class PolicyRegistry:
    """
    Category → policy table.

    Authorization is checked here, against the AccessControl table, for every
    mutating call. The ledger decides whether the mutation is committed; this
    class only validates (`check_*`) and applies (`_apply_*`).
    """

    def __init__(self, access: AccessControl):
        self._access = access
        self._policies: dict[str, ValidationPolicy] = {}
        self._lock = Lock()

    def get_policy(self, category: str) -> Optional[ValidationPolicy]:
        """Get the policy for a category, or None if none was ever recorded."""
        return self._policies.get(category)

    def is_known_category(self, category: str) -> bool:
        policy = self._policies.get(category)
        return policy is not None and policy.is_known

    def list_policies(self) -> dict[str, ValidationPolicy]:
        """Snapshot of all policies, sorted by category."""
        return dict(sorted(self._policies.items()))

    # ================================================================
    # VALIDATION (no side effects)
    # ================================================================

    def check_set_policy(self, ctx: AuthContext, category: str) -> None:
        self._access.require(ctx, Role.ADMIN)
        self._require_category_tag(category)

    def check_add_unit(self, ctx: AuthContext, category: str, unit: str) -> None:
        self._access.require(ctx, Role.ADMIN)
        self._require_category_tag(category)
        if not unit:
            raise ValueError("Unit must not be empty")

    def check_add_methodology(self, ctx: AuthContext, category: str, methodology: str) -> None:
        self._access.require(ctx, Role.ADMIN)
        self._require_category_tag(category)
        if not methodology:
            raise ValueError("Methodology must not be empty")

    @staticmethod
    def _require_category_tag(category: str) -> None:
        if not category:
            raise ValueError("Category tag must not be empty")

    # ================================================================
    # APPLICATION (after validation, or during replay)
    # ================================================================

    def _current_or_inert(self, category: str) -> ValidationPolicy:
        # Categories without a record start from the zero policy, which is
        # not "known" until set_policy gives it a max_age.
        return self._policies.get(category) or ValidationPolicy()

    def _apply_policy(self, category: str, policy: ValidationPolicy) -> None:
        with self._lock:
            self._policies[category] = policy

    def _apply_unit(self, category: str, unit: str) -> ValidationPolicy:
        with self._lock:
            updated = self._current_or_inert(category).with_unit(unit)
            self._policies[category] = updated
            return updated

    def _apply_methodology(self, category: str, methodology: str) -> ValidationPolicy:
        with self._lock:
            updated = self._current_or_inert(category).with_methodology(methodology)
            self._policies[category] = updated
            return updated

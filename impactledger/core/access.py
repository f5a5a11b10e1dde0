"""
Access Control

Process-wide role → identity-set table. Two roles: Admin and Validator.

Membership is additive only. No revoke operation is exposed.
"""

from threading import Lock
from typing import Optional

from ..schemas import AuthContext, Role
from .errors import UnauthorizedError


class AccessControl:
    """
    Role membership table.

    Reads are lock-free; grants swap in a new frozenset so a reader never
    sees a half-updated membership set.
    """

    def __init__(self):
        self._members: dict[Role, frozenset[str]] = {role: frozenset() for role in Role}
        self._lock = Lock()

    def has_role(self, role: Role, identity: str) -> bool:
        return identity in self._members[role]

    def members(self, role: Role) -> frozenset[str]:
        return self._members[role]

    @property
    def has_admin(self) -> bool:
        return bool(self._members[Role.ADMIN])

    def require(self, ctx: AuthContext, role: Role) -> None:
        """
        Raise UnauthorizedError unless the caller holds role.
        """
        if not self.has_role(role, ctx.identity):
            raise UnauthorizedError(
                f"Identity '{ctx.identity}' does not hold the {role.value} role"
            )

    def check_grant(self, ctx: Optional[AuthContext], role: Role, identity: str) -> bool:
        """
        Validate a grant without applying it.

        ctx=None is the bootstrap case and is only allowed while no admin
        exists and the grant is for Admin.

        Returns:
            False if identity already holds role (nothing to do), True otherwise.
        """
        if not identity:
            raise ValueError("Cannot grant a role to an empty identity")

        if ctx is None:
            if self.has_admin or role != Role.ADMIN:
                raise UnauthorizedError(
                    "Bootstrap grants are only allowed for the first admin"
                )
        else:
            self.require(ctx, Role.ADMIN)

        return not self.has_role(role, identity)

    def _apply_grant(self, role: Role, identity: str) -> None:
        """Add identity to role. Used after validation and during replay."""
        with self._lock:
            self._members[role] = self._members[role] | {identity}

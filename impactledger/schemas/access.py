"""
Access Schema

Roles and the authorization context passed into every ledger call.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """
    Disjoint capability sets.
    """
    ADMIN = "admin"           # Policy, unit, methodology and role management
    VALIDATOR = "validator"   # Claim confirmation


class AuthContext(BaseModel):
    """
    Who is calling.

    Carries identity only; roles are looked up in the ledger's role table
    at the moment of the call, never trusted from the caller.
    """
    model_config = ConfigDict(frozen=True)

    identity: str = Field(..., min_length=1)

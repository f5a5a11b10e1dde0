"""
Validation Policy Schema

One policy per category. A policy decides which impact claims are
acceptable at intake and how long they stay eligible for confirmation.
"""

from datetime import timedelta
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator


class ValidationPolicy(BaseModel):
    """
    Per-category rule set.

    Policies are immutable once built; the registry replaces the whole
    record on update. A category is "known" only while max_age is nonzero.
    """
    model_config = ConfigDict(frozen=True)

    min_value: Decimal = Field(
        default=Decimal("0"),
        description="Inclusive lower bound on the claim value"
    )
    max_value: Decimal = Field(
        default=Decimal("0"),
        description="Inclusive upper bound on the claim value"
    )
    max_age: timedelta = Field(
        default=timedelta(0),
        description="How long after submission a claim may still be verified (seconds on the wire)"
    )
    allow_negative: bool = Field(
        default=False,
        description="Whether negative values (e.g. biodiversity loss) are accepted"
    )
    required_evidence_types: frozenset[str] = Field(
        default_factory=frozenset,
        description="Evidence types the category expects. Recorded, not enforced at intake."
    )
    allowed_units: frozenset[str] = Field(
        default_factory=frozenset,
        description="Units a claim may be reported in"
    )
    allowed_methodologies: frozenset[str] = Field(
        default_factory=frozenset,
        description="Measurement methodologies accepted (exact, case-sensitive match)"
    )

    @model_validator(mode="after")
    def bounds_ordered(self) -> "ValidationPolicy":
        if self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        if self.max_age < timedelta(0):
            raise ValueError("max_age must not be negative")
        if self.max_age.microseconds:
            raise ValueError("max_age must be a whole number of seconds")
        return self

    @field_serializer("max_age")
    def _serialize_max_age(self, value: timedelta) -> int:
        return value.days * 86400 + value.seconds

    @field_serializer("required_evidence_types", "allowed_units", "allowed_methodologies")
    def _serialize_tag_set(self, value: frozenset[str]) -> list[str]:
        return sorted(value)

    @property
    def is_known(self) -> bool:
        return self.max_age > timedelta(0)

    def with_unit(self, unit: str) -> "ValidationPolicy":
        """Copy of this policy with unit added to the allowed set."""
        return self.model_copy(update={"allowed_units": self.allowed_units | {unit}})

    def with_methodology(self, methodology: str) -> "ValidationPolicy":
        """Copy of this policy with methodology added to the allowed set."""
        return self.model_copy(
            update={"allowed_methodologies": self.allowed_methodologies | {methodology}}
        )

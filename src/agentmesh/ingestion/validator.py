"""Schema-level acceptance or rejection of candidate session bundles.

Validation is pure: it never touches the store. Rejections carry every
field-level violation so callers can render feedback per field.
"""

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from agentmesh.models import CanonicalSessionBundle


@dataclass(frozen=True)
class FieldViolation:
    """One field-level validation failure."""

    path: str  # Dotted path into the candidate, e.g. "messages.0.role"
    reason: str


class BundleValidationError(ValueError):
    """Raised when a candidate bundle fails schema validation."""

    def __init__(self, violations: list[FieldViolation]) -> None:
        self.violations = violations
        summary = "; ".join(f"{v.path}: {v.reason}" for v in violations)
        super().__init__(f"Invalid session bundle: {summary}")

    def as_dicts(self) -> list[dict[str, str]]:
        return [{"path": v.path, "reason": v.reason} for v in self.violations]


def _format_path(loc: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in loc) or "<root>"


def _violations_from(error: ValidationError) -> list[FieldViolation]:
    return [
        FieldViolation(path=_format_path(item["loc"]), reason=item["msg"])
        for item in error.errors()
    ]


def check_bundle(candidate: Any) -> tuple[CanonicalSessionBundle | None, list[FieldViolation]]:
    """Validate a candidate without raising.

    Args:
        candidate: Untyped candidate (usually a dict decoded from JSON)

    Returns:
        Tuple of (typed bundle or None, list of violations)
    """
    if isinstance(candidate, CanonicalSessionBundle):
        return candidate, []

    try:
        bundle = CanonicalSessionBundle.model_validate(candidate)
    except ValidationError as e:
        return None, _violations_from(e)

    return bundle, []


def validate_bundle(candidate: Any) -> CanonicalSessionBundle:
    """Validate a candidate bundle.

    Args:
        candidate: Untyped candidate (usually a dict decoded from JSON)

    Returns:
        Fully typed CanonicalSessionBundle

    Raises:
        BundleValidationError: With every field-level violation found
    """
    bundle, violations = check_bundle(candidate)
    if bundle is None:
        raise BundleValidationError(violations)
    return bundle

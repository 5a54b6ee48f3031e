"""Dotted version comparison and constraint evaluation."""

import re
from dataclasses import dataclass

from .models import ConstraintType, VersionConstraint

# what may follow ">=", "==" or "=", or stand alone as an exact pin
_VERSION_TEXT = re.compile(r"[0-9A-Za-z][0-9A-Za-z._+-]*")


@dataclass(frozen=True)
class SatisfactionResult:
    """Whether an installed version meets a constraint, and why."""

    satisfied: bool
    reason: str


def parse_constraint(spec: str | None) -> VersionConstraint | None:
    """Parse a manifest version field into a constraint.

    Args:
        spec: Constraint string: ``"1.2.3"`` or ``"==1.2.3"`` (exact) or
            ``">=1.2.3"`` (minimum)

    Returns:
        The parsed constraint, or None when no constraint is declared

    Raises:
        ValueError: for any other operator, such as ``<=``, ``>`` or ``~``
    """
    if spec is None:
        return None
    spec = spec.strip()
    if not spec:
        return None

    if spec.startswith(">="):
        kind, version = ConstraintType.MINIMUM, spec[2:]
    elif spec.startswith("=="):
        kind, version = ConstraintType.EXACT, spec[2:]
    elif spec.startswith("="):
        kind, version = ConstraintType.EXACT, spec[1:]
    else:
        kind, version = ConstraintType.EXACT, spec

    version = version.strip()
    if not version:
        return None
    if not _VERSION_TEXT.fullmatch(version):
        raise ValueError(
            f"Unsupported version constraint {spec!r}, use an exact version or >=version"
        )
    return VersionConstraint(kind, version)


def _segment_value(segment: str) -> int:
    segment = segment.strip()
    if segment.isascii() and segment.isdecimal():
        return int(segment)
    return 0


def compare_versions(a: str | None, b: str | None) -> int | None:
    """Compare two dotted version strings.

    Non-numeric segments count as 0, as do the missing trailing segments of
    the shorter version, so ``"1.2"`` equals ``"1.2.0"``.

    Args:
        a: Left version
        b: Right version

    Returns:
        -1, 0 or 1, or None if either version is empty
    """
    if not a or not b or not a.strip() or not b.strip():
        return None

    left = [_segment_value(s) for s in a.strip().split(".")]
    right = [_segment_value(s) for s in b.strip().split(".")]
    length = max(len(left), len(right))
    left += [0] * (length - len(left))
    right += [0] * (length - len(right))

    for lhs, rhs in zip(left, right):
        if lhs < rhs:
            return -1
        if lhs > rhs:
            return 1
    return 0


def satisfies(
    installed_version: str | None, constraint: VersionConstraint | None
) -> SatisfactionResult:
    """Check an installed version against a constraint.

    An unknown installed version never satisfies a constraint.

    Args:
        installed_version: Version reported by the driver, None if unknown
        constraint: Parsed constraint, None if unconstrained

    Returns:
        SatisfactionResult with a short reason
    """
    if constraint is None:
        return SatisfactionResult(True, "no constraint")

    if not installed_version or not installed_version.strip():
        return SatisfactionResult(
            False, f"installed version unknown, required {constraint}"
        )

    comparison = compare_versions(installed_version, constraint.version)
    if comparison is None:
        return SatisfactionResult(
            False, f"cannot compare {installed_version} with {constraint}"
        )

    if constraint.type is ConstraintType.EXACT:
        if comparison == 0:
            return SatisfactionResult(True, f"{installed_version} matches {constraint}")
        return SatisfactionResult(
            False, f"{installed_version} does not match required {constraint.version}"
        )

    if comparison >= 0:
        return SatisfactionResult(True, f"{installed_version} satisfies {constraint}")
    return SatisfactionResult(
        False, f"{installed_version} is older than required {constraint}"
    )

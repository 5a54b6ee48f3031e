"""Drift between a manifest and observed software."""

from collections.abc import Callable, Mapping

from .drivers import installable_id
from .models import AppEntry, DriftReport, Manifest


def _sort_key(value: str) -> tuple[str, str]:
    return value.casefold(), value


def compute_drift(
    manifest: Manifest,
    observed: Mapping[str, object],
    platform: str,
    resolve: Callable[[AppEntry], str | None] | None = None,
) -> DriftReport:
    """Compute missing and extra software.

    Ids compare case-insensitively and are reported as written. The output is
    sorted so the same inputs always give the same report.

    Args:
        manifest: Desired state
        observed: Observed software keyed by id (values are ignored)
        platform: Ref key of the running platform
        resolve: Maps an entry to the id it is observed under, defaults to
            the entry's installable id

    Returns:
        DriftReport with ``version_mismatches`` left empty
    """
    if resolve is None:
        def resolve(entry: AppEntry) -> str | None:
            return installable_id(entry, platform)

    observed_keys = {str(key).casefold() for key in observed}

    wanted: dict[str, str] = {}
    for entry in manifest.apps:
        ref = resolve(entry)
        if ref:
            wanted.setdefault(ref.casefold(), ref)

    missing = sorted(
        {ref for key, ref in wanted.items() if key not in observed_keys}, key=_sort_key
    )
    extra = sorted(
        {str(key) for key in observed if str(key).casefold() not in wanted}, key=_sort_key
    )
    return DriftReport(missing=missing, extra=extra)

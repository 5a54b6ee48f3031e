"""Reports, run-artifact diffs, and their renderings.

Every command result is first turned into a plain payload dict (``to_dict``).
The JSON and human renderings below are both functions of that payload, so
they cannot disagree.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .drift import compute_drift
from .errors import EndstateError, ErrorCode
from .models import DriftReport, EngineState, Manifest
from .state import write_json_atomic

# fields that differ between any two runs and carry no reconciliation meaning
VOLATILE_FIELDS = frozenset({
    "runId",
    "timestampUtc",
    "verifyResult.runId",
    "verifyResult.timestampUtc",
})


@dataclass
class Report:
    """Read-only projection of state, optionally against a manifest."""

    has_state: bool
    state: EngineState | None = None
    manifest: Manifest | None = None
    drift: DriftReport | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"command": "report", "hasState": self.has_state}
        if self.state is not None:
            data["state"] = self.state.to_dict()
        if self.manifest is not None:
            data["manifest"] = {
                "path": self.manifest.path,
                "name": self.manifest.name,
                "version": self.manifest.version,
                "appCount": len(self.manifest.apps),
            }
        if self.drift is not None:
            data["drift"] = self.drift.to_dict()
        return data


def build_report(state: EngineState | None, manifest: Manifest | None = None) -> Report:
    """Project state (and drift against a manifest) into a report.

    Drift is computed from the apps recorded as installed in ``appsObserved``,
    keyed by manifest app id.

    Args:
        state: Current state, None if nothing has run yet
        manifest: Optional manifest to compare against

    Returns:
        Report; neither input is modified
    """
    if state is None:
        return Report(has_state=False, manifest=manifest)

    drift = None
    if manifest is not None:
        observed = {
            app_id: observed.version
            for app_id, observed in state.apps_observed.items()
            if observed.installed
        }
        drift = compute_drift(manifest, observed, platform="", resolve=lambda entry: entry.id)

    return Report(has_state=True, state=state, manifest=manifest, drift=drift)


@dataclass
class FieldChange:
    field: str
    before: Any
    after: Any

    def to_dict(self) -> dict:
        return {"field": self.field, "before": self.before, "after": self.after}


@dataclass
class ItemChange:
    id: str
    changes: list[FieldChange]

    def to_dict(self) -> dict:
        return {"id": self.id, "changes": [change.to_dict() for change in self.changes]}


@dataclass
class ArtifactDiff:
    """Field-by-field delta between two run artifacts."""

    fields: list[FieldChange] = field(default_factory=list)
    added: list[dict] = field(default_factory=list)
    removed: list[dict] = field(default_factory=list)
    changed: list[ItemChange] = field(default_factory=list)

    @property
    def identical(self) -> bool:
        return not (self.fields or self.added or self.removed or self.changed)

    def to_dict(self) -> dict:
        return {
            "command": "diff",
            "identical": self.identical,
            "fields": [change.to_dict() for change in self.fields],
            "itemsAdded": self.added,
            "itemsRemoved": self.removed,
            "itemsChanged": [change.to_dict() for change in self.changed],
        }


def _flatten(payload: dict, prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in payload.items():
        path = f"{prefix}{key}"
        if key == "items":
            continue
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{path}."))
        else:
            flat[path] = value
    return flat


def _items_by_id(payload: dict) -> dict[str, dict]:
    return {item["id"]: item for item in payload.get("items") or [] if "id" in item}


def diff_artifacts(
    before: dict, after: dict, ignore: frozenset[str] = VOLATILE_FIELDS
) -> ArtifactDiff:
    """Compare two run artifacts.

    Top-level fields and nested objects (counts, verify summary) are compared
    by dotted path; ``items`` lists are matched by app id.

    Args:
        before: Earlier artifact payload
        after: Later artifact payload
        ignore: Dotted field paths left out of the comparison

    Returns:
        ArtifactDiff
    """
    diff = ArtifactDiff()

    flat_before = _flatten(before)
    flat_after = _flatten(after)
    for path in sorted(set(flat_before) | set(flat_after)):
        if path in ignore:
            continue
        old = flat_before.get(path)
        new = flat_after.get(path)
        if old != new:
            diff.fields.append(FieldChange(path, old, new))

    items_before = _items_by_id(before)
    items_after = _items_by_id(after)
    for app_id, item in items_after.items():
        if app_id not in items_before:
            diff.added.append(item)
    for app_id, item in items_before.items():
        if app_id not in items_after:
            diff.removed.append(item)
            continue
        other = items_after[app_id]
        changes = [
            FieldChange(key, item.get(key), other.get(key))
            for key in sorted(set(item) | set(other))
            if item.get(key) != other.get(key)
        ]
        if changes:
            diff.changed.append(ItemChange(app_id, changes))

    return diff


def load_artifact(path: str | Path) -> dict:
    """Read a run artifact written with ``--out``."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, json.JSONDecodeError) as e:
        raise EndstateError(f"Cannot read artifact {path}: {e}", ErrorCode.ARTIFACT_INVALID) from e
    if not isinstance(data, dict):
        raise EndstateError(f"Artifact {path} must contain an object", ErrorCode.ARTIFACT_INVALID)
    return data


def write_artifact(path: str | Path, payload: dict) -> None:
    write_json_atomic(Path(path), payload)


def format_json_output(payload: dict) -> str:
    """Single-line JSON rendering."""
    return json.dumps(payload, separators=(",", ":"))


def _format_item(item: dict) -> str:
    line = f"  [{item['status']}] {item['id']} ({item['driver']}) {item['reason']}"
    if item.get("version"):
        line += f" v{item['version']}"
    if item.get("message"):
        line += f": {item['message']}"
    return line


def _format_verify(payload: dict) -> list[str]:
    lines = [_format_item(item) for item in payload.get("items", [])]
    lines.append(
        f"Verify: {payload['okCount']} ok, {payload['missingCount']} missing, "
        f"{payload['versionMismatches']} version mismatches, {payload['extraCount']} extra"
    )
    if payload.get("missingApps"):
        lines.append(f"  missing: {', '.join(payload['missingApps'])}")
    if payload.get("versionMismatchApps"):
        lines.append(f"  version mismatch: {', '.join(payload['versionMismatchApps'])}")
    return lines


def _format_report(payload: dict) -> list[str]:
    if not payload["hasState"]:
        return ["No state recorded yet."]

    state = payload["state"]
    lines = []
    applied = state.get("lastApplied")
    if applied:
        lines.append(f"Last applied: {applied['timestampUtc']} {applied['manifestPath']}")
    else:
        lines.append("Last applied: never")
    verified = state.get("lastVerify")
    if verified:
        outcome = "passed" if verified["success"] else "failed"
        lines.append(
            f"Last verify: {verified['timestampUtc']} {outcome} "
            f"({verified['okCount']} ok, {verified['missingCount']} missing, "
            f"{verified['versionMismatchCount']} version mismatches)"
        )
    else:
        lines.append("Last verify: never")

    observed = state.get("appsObserved") or {}
    lines.append(f"Apps observed: {len(observed)}")
    for app_id, app in observed.items():
        marker = "installed" if app["installed"] else "absent"
        version = f" v{app['version']}" if app.get("version") else ""
        lines.append(f"  {app_id} ({app['driver']}) {marker}{version}")

    drift = payload.get("drift")
    if drift is not None:
        lines.append(f"Drift: {drift['missingCount']} missing, {drift['extraCount']} extra")
        if drift["missing"]:
            lines.append(f"  missing: {', '.join(drift['missing'])}")
        if drift["extra"]:
            lines.append(f"  extra: {', '.join(drift['extra'])}")
    return lines


def _format_diff(payload: dict) -> list[str]:
    if payload["identical"]:
        return ["No differences."]
    lines = []
    for change in payload["fields"]:
        lines.append(f"~ {change['field']}: {change['before']!r} -> {change['after']!r}")
    for item in payload["itemsAdded"]:
        lines.append(f"+ {item['id']} {item['status']} {item['reason']}")
    for item in payload["itemsRemoved"]:
        lines.append(f"- {item['id']} {item['status']} {item['reason']}")
    for item in payload["itemsChanged"]:
        parts = ", ".join(
            f"{change['field']} {change['before']!r} -> {change['after']!r}"
            for change in item["changes"]
        )
        lines.append(f"~ {item['id']}: {parts}")
    return lines


def format_human_output(payload: dict) -> str:
    """Multi-line text rendering of any command payload."""
    command = payload.get("command")
    if command == "report":
        return "\n".join(_format_report(payload))
    if command == "diff":
        return "\n".join(_format_diff(payload))
    if command == "verify":
        return "\n".join(_format_verify(payload))

    title = "Plan" if payload.get("dryRun") else "Apply"
    lines = [f"{title}: {payload.get('manifestPath', '')}"]
    lines.extend(_format_item(item) for item in payload.get("items", []))
    counts = payload["counts"]
    lines.append(
        f"{title}: {counts['total']} total, {counts['installed']} installed, "
        f"{counts['upgraded']} upgraded, {counts['alreadyInstalled']} already installed, "
        f"{counts['skippedFiltered']} skipped, {counts['failed']} failed"
    )
    if payload.get("verifyResult"):
        lines.extend(_format_verify(payload["verifyResult"]))
    lines.append("Result: " + ("success" if payload["success"] else "failed"))
    return "\n".join(lines)

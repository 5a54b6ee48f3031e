"""Durable engine state.

The state file is rewritten whole on every change: the new content goes to a
uniquely named temp file in the same directory and is renamed over the old
file. Readers see either the previous or the new state, never a torn write.
There is no cross-process lock; when two runs finish together the last
rename wins.
"""

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ErrorCode, StateError, StateImportError
from .models import SCHEMA_VERSION, EngineState

logger = logging.getLogger(__name__)

IMPORT_MODES = ("merge", "replace")


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LastAppliedDocument(_Document):
    manifest_path: str = ""
    manifest_hash: str = ""
    timestamp_utc: str = ""


class LastVerifyDocument(LastAppliedDocument):
    ok_count: int = 0
    missing_count: int = 0
    version_mismatch_count: int = 0
    missing_apps: list[str] = []
    version_mismatch_apps: list[str] = []
    success: bool = False


class ObservedAppDocument(_Document):
    installed: bool = False
    driver: str = "winget"
    version: str | None = None
    version_constraint: str | None = None
    version_satisfied: bool | None = None
    last_seen_utc: str = ""


class StateDocument(_Document):
    """Shape of a state file on disk."""

    schema_version: int
    last_applied: LastAppliedDocument | None = None
    last_verify: LastVerifyDocument | None = None
    apps_observed: dict[str, ObservedAppDocument] = {}


def parse_state_document(raw: Any, source: str, error_cls: type[StateError] = StateError) -> EngineState:
    """Validate a decoded state document and convert it to EngineState.

    Args:
        raw: Decoded JSON
        source: Where the document came from, for messages
        error_cls: Error type raised on rejection

    Returns:
        The validated EngineState

    Raises:
        StateError: (or ``error_cls``) when the document is not a schema 1 state
    """
    if not isinstance(raw, dict):
        raise error_cls(f"{source} does not contain a state object")

    if "schemaVersion" not in raw:
        raise error_cls(
            f"{source} has no schemaVersion", ErrorCode.SCHEMA_VERSION_MISMATCH
        )
    version = raw["schemaVersion"]
    if isinstance(version, bool) or version != SCHEMA_VERSION:
        raise error_cls(
            f"{source} has schemaVersion {version!r}, expected {SCHEMA_VERSION}",
            ErrorCode.SCHEMA_VERSION_MISMATCH,
        )

    try:
        document = StateDocument.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise error_cls(f"Invalid state in {source}: {problems}") from e

    return EngineState.from_dict(document.model_dump(by_alias=True))


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_newer(incoming: str | None, existing: str | None) -> bool:
    incoming_at = parse_timestamp(incoming)
    if incoming_at is None:
        return False
    existing_at = parse_timestamp(existing)
    return existing_at is None or incoming_at > existing_at


def merge_states(existing: EngineState, incoming: EngineState) -> EngineState:
    """Merge an incoming state into an existing one without mutating either.

    ``lastApplied`` and ``lastVerify`` are taken from ``incoming`` only when
    its timestamp parses and is strictly newer. ``appsObserved`` merges per
    app id, incoming wins.

    Args:
        existing: Current state
        incoming: State being imported

    Returns:
        The merged state
    """
    last_applied = existing.last_applied
    if incoming.last_applied is not None and _is_newer(
        incoming.last_applied.timestamp_utc,
        existing.last_applied.timestamp_utc if existing.last_applied else None,
    ):
        last_applied = incoming.last_applied

    last_verify = existing.last_verify
    if incoming.last_verify is not None and _is_newer(
        incoming.last_verify.timestamp_utc,
        existing.last_verify.timestamp_utc if existing.last_verify else None,
    ):
        last_verify = incoming.last_verify

    apps_observed = dict(existing.apps_observed)
    apps_observed.update(incoming.apps_observed)

    return EngineState(
        schema_version=SCHEMA_VERSION,
        last_applied=last_applied,
        last_verify=last_verify,
        apps_observed=apps_observed,
    )


def write_json_atomic(path: Path, payload: dict) -> None:
    """Write JSON to ``path`` through a temp file and a rename.

    Raises:
        StateError: ``state_write_failed``; the previous file is left untouched
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
    except OSError as e:
        raise StateError(f"Cannot write {path}: {e}", ErrorCode.STATE_WRITE_FAILED) from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(payload, fh, indent=2)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise StateError(f"Cannot write {path}: {e}", ErrorCode.STATE_WRITE_FAILED) from e


class StateStore:
    """Reads and atomically rewrites the engine state file."""

    def __init__(self, path: str | Path, clock: Callable[[], datetime] | None = None):
        self.path = Path(path)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def read(self) -> EngineState | None:
        """Current state, or None when nothing has been written yet.

        Raises:
            StateError: if the file exists but is not a valid state
        """
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8-sig"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(f"Cannot read state {self.path}: {e}") from e
        return parse_state_document(raw, str(self.path))

    def write_atomic(self, state: EngineState) -> None:
        write_json_atomic(self.path, state.to_dict())
        logger.debug("Wrote state %s", self.path)

    def reset(self) -> bool:
        """Delete the state file.

        Returns:
            True if a file was removed, False if there was none
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateError(f"Cannot reset state {self.path}: {e}", ErrorCode.STATE_WRITE_FAILED) from e
        logger.info("Removed state %s", self.path)
        return True

    def export(self, destination: str | Path) -> EngineState:
        """Write the current state, or a fresh empty one, to ``destination``."""
        state = self.read() or EngineState()
        write_json_atomic(Path(destination), state.to_dict())
        return state

    def backup(self) -> Path | None:
        """Copy the current state file next to itself with a UTC timestamp."""
        if not self.path.exists():
            return None
        stamp = self.clock().strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self.path.with_name(f"{self.path.stem}.backup-{stamp}{self.path.suffix}")
        try:
            shutil.copy2(self.path, backup_path)
        except OSError as e:
            raise StateError(
                f"Cannot back up state to {backup_path}: {e}", ErrorCode.STATE_WRITE_FAILED
            ) from e
        logger.info("Backed up state to %s", backup_path)
        return backup_path

    def import_state(self, source: str | Path, mode: str = "merge") -> EngineState:
        """Import a state document.

        Args:
            source: Path of the document to import
            mode: ``merge`` (default) or ``replace``

        Returns:
            The state now on disk

        Raises:
            StateImportError: if the document is unreadable or not schema 1;
                nothing is written in that case
        """
        if mode not in IMPORT_MODES:
            raise StateImportError(f"Unknown import mode {mode!r}, use merge or replace")

        source = Path(source)
        try:
            raw = json.loads(source.read_text(encoding="utf-8-sig"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateImportError(f"Cannot read {source}: {e}") from e
        incoming = parse_state_document(raw, str(source), StateImportError)

        if mode == "replace":
            self.backup()
            result = incoming
        else:
            result = merge_states(self.read() or EngineState(), incoming)

        self.write_atomic(result)
        return result

"""Core data models for endstate."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

SCHEMA_VERSION = 1


class Driver(str, Enum):
    """Installation drivers an app entry can name."""

    WINGET = "winget"
    CUSTOM = "custom"


DEFAULT_DRIVER = Driver.WINGET


class ConstraintType(str, Enum):
    EXACT = "exact"
    MINIMUM = "minimum"


class ItemStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


class Reason(str, Enum):
    """Reason codes attached to run items."""

    NO_REF = "no_ref"
    ALREADY_INSTALLED = "already_installed"
    WOULD_INSTALL = "would_install"
    INSTALLED = "installed"
    INSTALL_FAILED = "install_failed"
    WOULD_UPGRADE = "would_upgrade"
    UPGRADED = "upgraded"
    MANUAL_UPGRADE_NEEDED = "manual_upgrade_needed"
    MISSING = "missing"
    VERSION_MISMATCH = "version_mismatch"
    UNKNOWN_DRIVER = "unknown_driver"


@dataclass(frozen=True)
class VersionConstraint:
    """A parsed version requirement from an app entry."""

    type: ConstraintType
    version: str

    def __str__(self) -> str:
        if self.type is ConstraintType.MINIMUM:
            return f">={self.version}"
        return self.version


@dataclass(frozen=True)
class DetectRule:
    """How a custom-driver app is detected: a file or a registry key."""

    type: str  # file, registry
    path: str


@dataclass(frozen=True)
class CustomConfig:
    """Driver-specific settings for the custom driver."""

    install_script: str | None = None
    detect: DetectRule | None = None


@dataclass(frozen=True)
class AppEntry:
    """A single application declared in a manifest."""

    id: str
    driver: Driver = DEFAULT_DRIVER
    refs: dict[str, str] = field(default_factory=dict)
    version: str | None = None
    custom: CustomConfig | None = None


@dataclass(frozen=True)
class Manifest:
    """A loaded manifest. Restore and verify blocks are carried, not interpreted."""

    version: int
    name: str
    apps: list[AppEntry]
    path: str = ""
    restore: list[Any] = field(default_factory=list)
    verify: list[Any] = field(default_factory=list)
    includes: list[str] = field(default_factory=list)


@dataclass
class InstallStatus:
    """Live answer to "is this app present right now?"."""

    installed: bool
    driver: Driver
    version: str | None = None  # None means the driver could not tell
    error: str | None = None


@dataclass
class InstallResult:
    """Outcome of a driver install or upgrade call."""

    success: bool
    action: str
    exit_code: int | None = None
    error: str | None = None
    message: str = ""


@dataclass
class RunItem:
    """One app's outcome within a single apply or verify pass."""

    id: str
    driver: str
    status: ItemStatus
    reason: str
    message: str = ""
    version: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "driver": self.driver,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
        }
        if self.version is not None:
            data["version"] = self.version
        return data


@dataclass
class DriftReport:
    """Missing and extra software relative to a manifest."""

    missing: list[str] = field(default_factory=list)
    extra: list[str] = field(default_factory=list)
    # Filled by the engine's per-item checks, never by the drift calculator.
    version_mismatches: list[dict] = field(default_factory=list)

    @property
    def missing_count(self) -> int:
        return len(self.missing)

    @property
    def extra_count(self) -> int:
        return len(self.extra)

    def to_dict(self) -> dict:
        return {
            "missing": list(self.missing),
            "extra": list(self.extra),
            "versionMismatches": list(self.version_mismatches),
            "missingCount": self.missing_count,
            "extraCount": self.extra_count,
        }


@dataclass
class VerifyResult:
    """Authoritative result of a verify pass."""

    success: bool
    exit_code: int
    ok_count: int = 0
    missing_count: int = 0
    version_mismatches: int = 0
    extra_count: int = 0
    missing_apps: list[str] = field(default_factory=list)
    version_mismatch_apps: list[str] = field(default_factory=list)
    extra_apps: list[str] = field(default_factory=list)
    items: list[RunItem] = field(default_factory=list)
    run_id: str = ""
    manifest_path: str = ""
    manifest_hash: str = ""
    timestamp_utc: str = ""

    def to_dict(self) -> dict:
        return {
            "command": "verify",
            "runId": self.run_id,
            "timestampUtc": self.timestamp_utc,
            "manifestPath": self.manifest_path,
            "manifestHash": self.manifest_hash,
            "success": self.success,
            "exitCode": self.exit_code,
            "okCount": self.ok_count,
            "missingCount": self.missing_count,
            "versionMismatches": self.version_mismatches,
            "extraCount": self.extra_count,
            "missingApps": list(self.missing_apps),
            "versionMismatchApps": list(self.version_mismatch_apps),
            "extraApps": list(self.extra_apps),
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class ApplyCounts:
    total: int = 0
    installed: int = 0
    upgraded: int = 0
    already_installed: int = 0
    skipped_filtered: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "installed": self.installed,
            "upgraded": self.upgraded,
            "alreadyInstalled": self.already_installed,
            "skippedFiltered": self.skipped_filtered,
            "failed": self.failed,
        }


@dataclass
class ApplyResult:
    """Authoritative result of an apply (or plan) pass."""

    success: bool
    exit_code: int
    dry_run: bool
    counts: ApplyCounts
    items: list[RunItem] = field(default_factory=list)
    verify_result: VerifyResult | None = None
    run_id: str = ""
    manifest_path: str = ""
    manifest_hash: str = ""
    timestamp_utc: str = ""

    def to_dict(self) -> dict:
        data = {
            "command": "plan" if self.dry_run else "apply",
            "runId": self.run_id,
            "timestampUtc": self.timestamp_utc,
            "manifestPath": self.manifest_path,
            "manifestHash": self.manifest_hash,
            "success": self.success,
            "exitCode": self.exit_code,
            "dryRun": self.dry_run,
            "counts": self.counts.to_dict(),
            "items": [item.to_dict() for item in self.items],
        }
        if self.verify_result is not None:
            data["verifyResult"] = self.verify_result.to_dict()
        return data


@dataclass
class ObservedApp:
    """Last known status of one app, as recorded in state."""

    installed: bool
    driver: str
    version: str | None = None
    version_constraint: str | None = None
    version_satisfied: bool | None = None
    last_seen_utc: str = ""

    def to_dict(self) -> dict:
        return {
            "installed": self.installed,
            "driver": self.driver,
            "version": self.version,
            "versionConstraint": self.version_constraint,
            "versionSatisfied": self.version_satisfied,
            "lastSeenUtc": self.last_seen_utc,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ObservedApp":
        return cls(
            installed=bool(data.get("installed", False)),
            driver=data.get("driver") or DEFAULT_DRIVER.value,
            version=data.get("version"),
            version_constraint=data.get("versionConstraint"),
            version_satisfied=data.get("versionSatisfied"),
            last_seen_utc=data.get("lastSeenUtc") or "",
        )


@dataclass
class LastApplied:
    manifest_path: str
    manifest_hash: str
    timestamp_utc: str

    def to_dict(self) -> dict:
        return {
            "manifestPath": self.manifest_path,
            "manifestHash": self.manifest_hash,
            "timestampUtc": self.timestamp_utc,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LastApplied":
        return cls(
            manifest_path=data.get("manifestPath") or "",
            manifest_hash=data.get("manifestHash") or "",
            timestamp_utc=data.get("timestampUtc") or "",
        )


@dataclass
class LastVerify:
    manifest_path: str
    manifest_hash: str
    timestamp_utc: str
    ok_count: int = 0
    missing_count: int = 0
    version_mismatch_count: int = 0
    missing_apps: list[str] = field(default_factory=list)
    version_mismatch_apps: list[str] = field(default_factory=list)
    success: bool = False

    def to_dict(self) -> dict:
        return {
            "manifestPath": self.manifest_path,
            "manifestHash": self.manifest_hash,
            "timestampUtc": self.timestamp_utc,
            "okCount": self.ok_count,
            "missingCount": self.missing_count,
            "versionMismatchCount": self.version_mismatch_count,
            "missingApps": list(self.missing_apps),
            "versionMismatchApps": list(self.version_mismatch_apps),
            "success": self.success,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LastVerify":
        return cls(
            manifest_path=data.get("manifestPath") or "",
            manifest_hash=data.get("manifestHash") or "",
            timestamp_utc=data.get("timestampUtc") or "",
            ok_count=int(data.get("okCount") or 0),
            missing_count=int(data.get("missingCount") or 0),
            version_mismatch_count=int(data.get("versionMismatchCount") or 0),
            missing_apps=list(data.get("missingApps") or []),
            version_mismatch_apps=list(data.get("versionMismatchApps") or []),
            success=bool(data.get("success", False)),
        )


@dataclass
class EngineState:
    """Persisted run history for one machine or workspace."""

    schema_version: int = SCHEMA_VERSION
    last_applied: LastApplied | None = None
    last_verify: LastVerify | None = None
    apps_observed: dict[str, ObservedApp] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "schemaVersion": self.schema_version,
            "lastApplied": self.last_applied.to_dict() if self.last_applied else None,
            "lastVerify": self.last_verify.to_dict() if self.last_verify else None,
            "appsObserved": {
                app_id: observed.to_dict()
                for app_id, observed in sorted(self.apps_observed.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EngineState":
        last_applied = data.get("lastApplied")
        last_verify = data.get("lastVerify")
        return cls(
            schema_version=data.get("schemaVersion", SCHEMA_VERSION),
            last_applied=LastApplied.from_dict(last_applied) if last_applied else None,
            last_verify=LastVerify.from_dict(last_verify) if last_verify else None,
            apps_observed={
                app_id: ObservedApp.from_dict(observed)
                for app_id, observed in (data.get("appsObserved") or {}).items()
            },
        )

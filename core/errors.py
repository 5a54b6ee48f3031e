"""Error types for endstate.

Core modules raise these; the CLI decides how they are rendered and which
exit code they map to.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Stable machine-readable error and failure codes."""

    # input errors
    MANIFEST_NOT_FOUND = "manifest_not_found"
    MANIFEST_INVALID = "manifest_invalid"
    MANIFEST_INCLUDE_CYCLE = "manifest_include_cycle"
    ARTIFACT_INVALID = "artifact_invalid"
    CONFIG_INVALID = "config_invalid"

    # state errors
    STATE_CORRUPT = "state_corrupt"
    STATE_WRITE_FAILED = "state_write_failed"
    SCHEMA_VERSION_MISMATCH = "schema_version_mismatch"
    IMPORT_INVALID = "import_invalid"

    # per-item driver failures
    NO_INSTALLABLE_REF = "no_installable_ref"
    SCRIPT_PATH_OUTSIDE_ROOT = "script_path_outside_root"
    INSTALL_SCRIPT_NOT_FOUND = "install_script_not_found"
    UNKNOWN_DRIVER = "unknown_driver"
    MANUAL_UPGRADE_NEEDED = "manual_upgrade_needed"
    PROCESS_FAILED = "process_failed"
    PROCESS_ERROR = "process_error"
    DETECTION_UNSUPPORTED = "detection_unsupported"
    PACKAGE_LIST_FAILED = "package_list_failed"


class EndstateError(Exception):
    """Base error. Carries a stable code next to the human message."""

    code: ErrorCode = ErrorCode.CONFIG_INVALID

    def __init__(self, message: str, code: ErrorCode | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class ConfigError(EndstateError):
    """Invalid engine configuration."""

    code = ErrorCode.CONFIG_INVALID


class ManifestError(EndstateError):
    """Manifest missing, unreadable, or malformed."""

    code = ErrorCode.MANIFEST_INVALID


class StateError(EndstateError):
    """State file could not be read or written."""

    code = ErrorCode.STATE_CORRUPT


class StateImportError(StateError):
    """An import document was rejected before any write happened."""

    code = ErrorCode.IMPORT_INVALID


class DriverError(EndstateError):
    """A driver or package-manager call could not be completed."""

    code = ErrorCode.PROCESS_ERROR

"""Installation drivers and dispatch.

Two drivers exist. The standard driver asks a package manager (winget) what
is installed and installs or upgrades through it. The custom driver detects
an app through a file or registry rule and installs it by running a script
that must live under the trusted root.
"""

import json
import logging
import os
import re
import subprocess
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import EngineConfig
from .errors import DriverError, ErrorCode
from .models import DEFAULT_DRIVER, AppEntry, Driver, InstallResult, InstallStatus

logger = logging.getLogger(__name__)

DEFAULT_REF_KEY = "default"


def driver_of(entry: AppEntry) -> Driver:
    """Driver named by the entry, or the default driver."""
    return entry.driver or DEFAULT_DRIVER


def installable_id(entry: AppEntry, platform: str) -> str | None:
    """Resolve the identifier a driver installs and detects an entry by.

    Args:
        entry: Manifest app entry
        platform: Ref key of the running platform (windows, linux, macos)

    Returns:
        The platform ref, else the ``default`` ref, else the entry id for the
        standard driver when the entry declares no refs at all. None when
        nothing applies, including entries whose refs only name other
        platforms.
    """
    refs = entry.refs or {}
    ref = refs.get(platform) or refs.get(DEFAULT_REF_KEY)
    if ref:
        return ref
    if not refs and driver_of(entry) is Driver.WINGET and entry.id:
        return entry.id
    return None


_PERCENT_VAR = re.compile(r"%([^%]+)%")
_DOLLAR_VAR = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_environment(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Expand ``%VAR%``, ``$VAR`` and ``${VAR}``; unknown variables stay as written."""
    env = os.environ if environ is None else environ

    def percent(match: re.Match) -> str:
        return env.get(match.group(1), match.group(0))

    def dollar(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        return env.get(name, match.group(0))

    expanded = _PERCENT_VAR.sub(percent, value)
    expanded = _DOLLAR_VAR.sub(dollar, expanded)
    return os.path.expanduser(expanded)


@dataclass
class ProcessResult:
    """Outcome of a package-manager or script process."""

    success: bool
    exit_code: int | None
    output: str = ""
    error: str | None = None


class PackageManagerClient(Protocol):
    """What the standard driver needs from a package manager."""

    def list_installed(self) -> dict[str, str | None]:
        """Map of installed package id to version (None when unknown)."""
        ...

    def install_or_upgrade(self, package_id: str, is_upgrade: bool) -> ProcessResult:
        ...


Runner = Callable[..., subprocess.CompletedProcess]


def run_process(
    command: list[str], runner: Runner = subprocess.run, timeout: float | None = None
) -> ProcessResult:
    """Run a command to completion and capture its outcome without raising."""
    logger.debug("Running %s", " ".join(command))
    try:
        completed = runner(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        return ProcessResult(False, None, error=f"{command[0]} not found: {e}")
    except subprocess.TimeoutExpired:
        return ProcessResult(False, None, error=f"{command[0]} timed out after {timeout}s")
    except OSError as e:
        return ProcessResult(False, None, error=f"Cannot start {command[0]}: {e}")

    output = (completed.stdout or "") + (completed.stderr or "")
    if completed.returncode != 0:
        return ProcessResult(
            False,
            completed.returncode,
            output=output,
            error=f"{command[0]} exited with code {completed.returncode}",
        )
    return ProcessResult(True, 0, output=output)


def parse_winget_export(data: dict) -> dict[str, str | None]:
    """Flatten a ``winget export`` document into id -> version."""
    installed: dict[str, str | None] = {}
    for source in data.get("Sources") or []:
        for package in source.get("Packages") or []:
            package_id = package.get("PackageIdentifier")
            if not package_id:
                continue
            version = package.get("Version") or None
            installed[package_id] = version
    return installed


class WingetClient:
    """Package-manager client backed by the winget command line."""

    AGREEMENT_FLAGS = [
        "--accept-source-agreements",
        "--disable-interactivity",
    ]

    def __init__(
        self,
        executable: str = "winget",
        timeout: float | None = None,
        runner: Runner = subprocess.run,
    ):
        self.executable = executable
        self.timeout = timeout
        self.runner = runner

    def list_installed(self) -> dict[str, str | None]:
        """Snapshot installed packages through ``winget export``.

        Raises:
            DriverError: if winget produced no export document
        """
        with tempfile.TemporaryDirectory(prefix="endstate-") as tmp:
            export_path = Path(tmp) / "installed.json"
            command = [
                self.executable,
                "export",
                "--output",
                str(export_path),
                "--include-versions",
                *self.AGREEMENT_FLAGS,
            ]
            result = run_process(command, self.runner, self.timeout)

            # export exits non-zero when some packages are not exportable,
            # the document is still written
            if not export_path.is_file():
                raise DriverError(
                    f"Cannot list installed software: {result.error or 'no export produced'}",
                    ErrorCode.PACKAGE_LIST_FAILED,
                )
            try:
                data = json.loads(export_path.read_text(encoding="utf-8-sig"))
            except (OSError, json.JSONDecodeError) as e:
                raise DriverError(
                    f"Cannot read winget export: {e}", ErrorCode.PACKAGE_LIST_FAILED
                ) from e

        installed = parse_winget_export(data)
        logger.debug("winget reports %d installed packages", len(installed))
        return installed

    def install_or_upgrade(self, package_id: str, is_upgrade: bool) -> ProcessResult:
        verb = "upgrade" if is_upgrade else "install"
        command = [
            self.executable,
            verb,
            "--id",
            package_id,
            "--exact",
            "--silent",
            "--accept-package-agreements",
            *self.AGREEMENT_FLAGS,
        ]
        return run_process(command, self.runner, self.timeout)


class InstallDriver(ABC):
    """Common interface of every installation driver."""

    name: Driver

    def refresh(self) -> None:
        """Drop any live snapshot so the next query sees current system state."""

    @abstractmethod
    def is_installed(self, entry: AppEntry, ref: str) -> InstallStatus:
        ...

    @abstractmethod
    def install(
        self, entry: AppEntry, ref: str, dry_run: bool = False, is_upgrade: bool = False
    ) -> InstallResult:
        ...


class StandardDriver(InstallDriver):
    """Driver for apps managed by the package manager."""

    name = Driver.WINGET

    def __init__(self, client: PackageManagerClient):
        self.client = client
        self._snapshot: dict[str, str | None] | None = None
        self._lookup: dict[str, str] = {}

    def refresh(self) -> None:
        self._snapshot = None
        self._lookup = {}

    def snapshot(self) -> dict[str, str | None]:
        """Installed software map, listed once per pass."""
        if self._snapshot is None:
            self._snapshot = dict(self.client.list_installed())
            # package ids compare case-insensitively
            self._lookup = {key.casefold(): key for key in self._snapshot}
        return self._snapshot

    def is_installed(self, entry: AppEntry, ref: str) -> InstallStatus:
        snapshot = self.snapshot()
        key = self._lookup.get(ref.casefold())
        if key is None:
            return InstallStatus(installed=False, driver=self.name)
        return InstallStatus(installed=True, driver=self.name, version=snapshot[key])

    def install(
        self, entry: AppEntry, ref: str, dry_run: bool = False, is_upgrade: bool = False
    ) -> InstallResult:
        action = "upgrade" if is_upgrade else "install"
        if dry_run:
            return InstallResult(
                success=True, action=f"would_{action}", message=f"would {action} {ref}"
            )

        logger.info("%s %s via %s", action.capitalize(), ref, self.name.value)
        result = self.client.install_or_upgrade(ref, is_upgrade)
        if result.success:
            return InstallResult(
                success=True, action=action, exit_code=result.exit_code, message=f"{action} {ref}"
            )

        code = ErrorCode.PROCESS_FAILED if result.exit_code is not None else ErrorCode.PROCESS_ERROR
        return InstallResult(
            success=False,
            action=action,
            exit_code=result.exit_code,
            error=code.value,
            message=result.error or f"{action} {ref} failed",
        )


RegistryProbe = Callable[[str], tuple[bool, str | None]]

_REGISTRY_HIVES = {
    "HKLM": "HKEY_LOCAL_MACHINE",
    "HKCU": "HKEY_CURRENT_USER",
    "HKCR": "HKEY_CLASSES_ROOT",
    "HKU": "HKEY_USERS",
    "HKCC": "HKEY_CURRENT_CONFIG",
}


def probe_registry(key_path: str) -> tuple[bool, str | None]:
    """Check whether a registry key exists and read its ``DisplayVersion``.

    Args:
        key_path: Key such as ``HKLM\\SOFTWARE\\Vendor\\App`` or ``HKCU:\\Software\\App``

    Returns:
        (exists, version or None)

    Raises:
        DriverError: when the registry is not available on this platform
    """
    try:
        import winreg
    except ImportError as e:
        raise DriverError(
            "Registry detection is only available on Windows",
            ErrorCode.DETECTION_UNSUPPORTED,
        ) from e

    hive_name, _, subkey = key_path.replace("/", "\\").partition("\\")
    hive_name = hive_name.rstrip(":").upper()
    hive_name = _REGISTRY_HIVES.get(hive_name, hive_name)
    hive = getattr(winreg, hive_name, None)
    if hive is None:
        raise DriverError(f"Unknown registry hive in {key_path}", ErrorCode.DETECTION_UNSUPPORTED)

    try:
        with winreg.OpenKey(hive, subkey) as key:
            try:
                version, _ = winreg.QueryValueEx(key, "DisplayVersion")
            except FileNotFoundError:
                return True, None
            return True, str(version) if version else None
    except FileNotFoundError:
        return False, None


class CustomDriver(InstallDriver):
    """Driver for apps installed by a script from the trusted root."""

    name = Driver.CUSTOM

    def __init__(
        self,
        root: Path,
        script_shell: tuple[str, ...],
        runner: Runner = subprocess.run,
        registry_probe: RegistryProbe = probe_registry,
        environ: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ):
        self.root = Path(root).resolve()
        self.script_shell = tuple(script_shell)
        self.runner = runner
        self.registry_probe = registry_probe
        self.environ = environ
        self.timeout = timeout

    def is_installed(self, entry: AppEntry, ref: str) -> InstallStatus:
        rule = entry.custom.detect if entry.custom else None
        if rule is None:
            return InstallStatus(
                installed=False, driver=self.name, error="no detection rule declared"
            )

        target = expand_environment(rule.path, self.environ)
        if rule.type == "file":
            # a file tells us nothing about the version
            return InstallStatus(installed=Path(target).exists(), driver=self.name)

        if rule.type == "registry":
            try:
                found, version = self.registry_probe(target)
            except DriverError as e:
                return InstallStatus(installed=False, driver=self.name, error=e.message)
            return InstallStatus(installed=found, driver=self.name, version=version)

        return InstallStatus(
            installed=False, driver=self.name, error=f"unknown detection type {rule.type}"
        )

    def resolve_script(self, entry: AppEntry) -> Path:
        """Resolve the entry's install script inside the trusted root.

        Raises:
            DriverError: ``script_path_outside_root`` or ``install_script_not_found``
        """
        script = entry.custom.install_script if entry.custom else None
        if not script:
            raise DriverError(
                f"{entry.id} declares no install script", ErrorCode.INSTALL_SCRIPT_NOT_FOUND
            )

        candidate = Path(expand_environment(script, self.environ))
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()

        if not resolved.is_relative_to(self.root):
            raise DriverError(
                f"Install script {script} resolves to {resolved}, outside {self.root}",
                ErrorCode.SCRIPT_PATH_OUTSIDE_ROOT,
            )
        if not resolved.is_file():
            raise DriverError(
                f"Install script {resolved} not found", ErrorCode.INSTALL_SCRIPT_NOT_FOUND
            )
        return resolved

    def install(
        self, entry: AppEntry, ref: str, dry_run: bool = False, is_upgrade: bool = False
    ) -> InstallResult:
        if is_upgrade:
            return InstallResult(
                success=False,
                action="upgrade",
                error=ErrorCode.MANUAL_UPGRADE_NEEDED.value,
                message=f"{entry.id} is installed by a custom script and must be upgraded manually",
            )

        try:
            script = self.resolve_script(entry)
        except DriverError as e:
            logger.warning("Refusing to install %s: %s", entry.id, e.message)
            return InstallResult(
                success=False, action="install", error=e.code.value, message=e.message
            )

        if dry_run:
            return InstallResult(
                success=True, action="would_install", message=f"would run {script}"
            )

        logger.info("Running install script %s for %s", script, entry.id)
        result = run_process([*self.script_shell, str(script)], self.runner, self.timeout)
        if result.success:
            return InstallResult(
                success=True, action="install", exit_code=0, message=f"ran {script.name}"
            )

        code = ErrorCode.PROCESS_FAILED if result.exit_code is not None else ErrorCode.PROCESS_ERROR
        return InstallResult(
            success=False,
            action="install",
            exit_code=result.exit_code,
            error=code.value,
            message=result.error or f"{script.name} failed",
        )


class DriverDispatch:
    """Maps app entries to the driver that handles them."""

    def __init__(self, drivers: Mapping[Driver, InstallDriver], platform: str):
        self.drivers = dict(drivers)
        self.platform = platform

    @classmethod
    def from_config(
        cls, config: EngineConfig, client: PackageManagerClient | None = None
    ) -> "DriverDispatch":
        """Build the standard and custom drivers for a config.

        Args:
            config: Engine configuration
            client: Package-manager client, defaults to winget

        Returns:
            A dispatch with both drivers registered
        """
        client = client or WingetClient(timeout=config.driver_timeout)
        return cls(
            {
                Driver.WINGET: StandardDriver(client),
                Driver.CUSTOM: CustomDriver(
                    config.root, config.script_shell, timeout=config.driver_timeout
                ),
            },
            platform=config.platform,
        )

    def installable_id(self, entry: AppEntry) -> str | None:
        return installable_id(entry, self.platform)

    def driver_for(self, entry: AppEntry) -> InstallDriver:
        """Driver registered for the entry.

        Raises:
            DriverError: ``unknown_driver`` when none is registered
        """
        name = driver_of(entry)
        driver = self.drivers.get(name)
        if driver is None:
            raise DriverError(
                f"No driver registered for {name.value}", ErrorCode.UNKNOWN_DRIVER
            )
        return driver

    def refresh(self) -> None:
        for driver in self.drivers.values():
            driver.refresh()

    def is_installed(self, entry: AppEntry) -> InstallStatus:
        ref = self.installable_id(entry)
        if ref is None:
            return InstallStatus(
                installed=False, driver=driver_of(entry), error=ErrorCode.NO_INSTALLABLE_REF.value
            )
        return self.driver_for(entry).is_installed(entry, ref)

    def install(
        self, entry: AppEntry, dry_run: bool = False, is_upgrade: bool = False
    ) -> InstallResult:
        ref = self.installable_id(entry)
        if ref is None:
            return InstallResult(
                success=False,
                action="install",
                error=ErrorCode.NO_INSTALLABLE_REF.value,
                message=f"{entry.id} has no installable ref for {self.platform}",
            )
        return self.driver_for(entry).install(entry, ref, dry_run=dry_run, is_upgrade=is_upgrade)

    def installed_software(self) -> dict[str, str | None]:
        """Live package-manager snapshot, empty when no standard driver is registered."""
        driver = self.drivers.get(Driver.WINGET)
        if isinstance(driver, StandardDriver):
            return driver.snapshot()
        return {}

"""Tests for driver dispatch and the two drivers."""

import json
import subprocess
from unittest.mock import MagicMock

import pytest

from core.drivers import (
    CustomDriver,
    DriverDispatch,
    StandardDriver,
    WingetClient,
    expand_environment,
    installable_id,
    parse_winget_export,
)
from core.errors import DriverError, ErrorCode
from core.models import AppEntry, CustomConfig, DetectRule, Driver


def custom_entry(script="scripts/install.ps1", detect=None, refs=None):
    return AppEntry(
        id="tool",
        driver=Driver.CUSTOM,
        refs=refs if refs is not None else {"default": "Tool"},
        custom=CustomConfig(install_script=script, detect=detect),
    )


class TestInstallableId:
    """Test ref resolution per driver and platform."""

    def test_platform_ref_preferred(self):
        entry = AppEntry(id="git", refs={"windows": "Git.Git", "default": "git"})
        assert installable_id(entry, "windows") == "Git.Git"
        assert installable_id(entry, "linux") == "git"

    def test_standard_driver_falls_back_to_id(self):
        assert installable_id(AppEntry(id="Git.Git"), "windows") == "Git.Git"

    def test_custom_driver_never_falls_back_to_id(self):
        entry = custom_entry(refs={})
        assert installable_id(entry, "windows") is None

    def test_other_platform_only_is_filtered(self):
        entry = AppEntry(id="htop", refs={"linux": "htop"})
        assert installable_id(entry, "windows") is None


class TestExpandEnvironment:
    def test_percent_and_dollar_forms(self):
        env = {"LOCALAPPDATA": "C:/Users/me/AppData/Local", "HOME": "/home/me"}
        assert expand_environment("%LOCALAPPDATA%/tool.exe", env) == "C:/Users/me/AppData/Local/tool.exe"
        assert expand_environment("$HOME/bin", env) == "/home/me/bin"
        assert expand_environment("${HOME}/bin", env) == "/home/me/bin"

    def test_unknown_variables_left_alone(self):
        assert expand_environment("%NOPE%/x", {}) == "%NOPE%/x"


class TestStandardDriver:
    """Test the package-manager backed driver."""

    def test_is_installed_uses_live_snapshot(self, fake_client):
        fake_client.installed = {"Git.Git": "2.43.0"}
        driver = StandardDriver(fake_client)
        entry = AppEntry(id="git")

        status = driver.is_installed(entry, "git.git")
        assert status.installed
        assert status.version == "2.43.0"
        assert not driver.is_installed(entry, "Missing.App").installed
        assert fake_client.list_calls == 1

    def test_refresh_drops_snapshot(self, fake_client):
        driver = StandardDriver(fake_client)
        driver.snapshot()
        driver.refresh()
        driver.snapshot()
        assert fake_client.list_calls == 2

    def test_dry_run_never_executes(self, fake_client):
        driver = StandardDriver(fake_client)
        result = driver.install(AppEntry(id="git"), "Git.Git", dry_run=True)
        assert result.success
        assert result.action == "would_install"
        assert fake_client.calls == []

    def test_failed_install_reports_process_failure(self, fake_client):
        fake_client.failing = {"Git.Git"}
        result = StandardDriver(fake_client).install(AppEntry(id="git"), "Git.Git")
        assert not result.success
        assert result.exit_code == 1
        assert result.error == ErrorCode.PROCESS_FAILED.value


class TestCustomDriver:
    """Test script-based installs and detection."""

    def test_path_traversal_rejected_without_spawning(self, tmp_path):
        runner = MagicMock()
        driver = CustomDriver(tmp_path, ("pwsh", "-File"), runner=runner)

        result = driver.install(custom_entry(script="../../outside.ps1"), "Tool")

        assert not result.success
        assert result.error == ErrorCode.SCRIPT_PATH_OUTSIDE_ROOT.value
        runner.assert_not_called()

    def test_absolute_path_outside_root_rejected(self, tmp_path):
        outside = tmp_path.parent / "elsewhere.ps1"
        runner = MagicMock()
        driver = CustomDriver(tmp_path / "root", ("pwsh", "-File"), runner=runner)

        result = driver.install(custom_entry(script=str(outside)), "Tool", dry_run=True)

        assert result.error == ErrorCode.SCRIPT_PATH_OUTSIDE_ROOT.value
        runner.assert_not_called()

    def test_missing_script(self, tmp_path):
        driver = CustomDriver(tmp_path, ("pwsh", "-File"), runner=MagicMock())
        result = driver.install(custom_entry(), "Tool")
        assert result.error == ErrorCode.INSTALL_SCRIPT_NOT_FOUND.value

    def test_runs_script_inside_root(self, tmp_path):
        script = tmp_path / "scripts" / "install.ps1"
        script.parent.mkdir()
        script.write_text("Write-Host hi")
        runner = MagicMock(return_value=subprocess.CompletedProcess([], 0, "", ""))
        driver = CustomDriver(tmp_path, ("pwsh", "-File"), runner=runner)

        result = driver.install(custom_entry(), "Tool")

        assert result.success
        command = runner.call_args[0][0]
        assert command == ["pwsh", "-File", str(script.resolve())]

    def test_dry_run_does_not_run_script(self, tmp_path):
        script = tmp_path / "scripts" / "install.ps1"
        script.parent.mkdir()
        script.write_text("")
        runner = MagicMock()
        driver = CustomDriver(tmp_path, ("pwsh", "-File"), runner=runner)

        result = driver.install(custom_entry(), "Tool", dry_run=True)

        assert result.success
        assert result.action == "would_install"
        runner.assert_not_called()

    def test_script_failure(self, tmp_path):
        script = tmp_path / "scripts" / "install.ps1"
        script.parent.mkdir()
        script.write_text("")
        runner = MagicMock(return_value=subprocess.CompletedProcess([], 3, "", "boom"))
        driver = CustomDriver(tmp_path, ("pwsh", "-File"), runner=runner)

        result = driver.install(custom_entry(), "Tool")

        assert not result.success
        assert result.exit_code == 3

    def test_upgrade_needs_manual_action(self, tmp_path):
        runner = MagicMock()
        driver = CustomDriver(tmp_path, ("pwsh", "-File"), runner=runner)
        result = driver.install(custom_entry(), "Tool", is_upgrade=True)
        assert not result.success
        assert result.error == ErrorCode.MANUAL_UPGRADE_NEEDED.value
        runner.assert_not_called()

    def test_file_detection_never_reports_version(self, tmp_path):
        target = tmp_path / "tool.exe"
        target.write_text("")
        driver = CustomDriver(
            tmp_path, ("pwsh",), environ={"APPDIR": str(tmp_path)}
        )
        entry = custom_entry(detect=DetectRule(type="file", path="%APPDIR%/tool.exe"))

        status = driver.is_installed(entry, "Tool")

        assert status.installed
        assert status.version is None

    def test_registry_detection_uses_probe(self, tmp_path):
        probe = MagicMock(return_value=(True, "4.2"))
        driver = CustomDriver(tmp_path, ("pwsh",), registry_probe=probe, environ={})
        entry = custom_entry(detect=DetectRule(type="registry", path="HKLM\\SOFTWARE\\Tool"))

        status = driver.is_installed(entry, "Tool")

        assert status.installed
        assert status.version == "4.2"
        probe.assert_called_once_with("HKLM\\SOFTWARE\\Tool")

    def test_registry_unsupported_reports_not_installed(self, tmp_path):
        def probe(path):
            raise DriverError("no registry here", ErrorCode.DETECTION_UNSUPPORTED)

        driver = CustomDriver(tmp_path, ("pwsh",), registry_probe=probe)
        entry = custom_entry(detect=DetectRule(type="registry", path="HKCU\\Software\\Tool"))

        status = driver.is_installed(entry, "Tool")
        assert not status.installed
        assert status.error == "no registry here"


class TestDriverDispatch:
    def test_unknown_driver(self, config, fake_client):
        dispatch = DriverDispatch({Driver.WINGET: StandardDriver(fake_client)}, platform="windows")
        with pytest.raises(DriverError) as exc:
            dispatch.driver_for(custom_entry())
        assert exc.value.code is ErrorCode.UNKNOWN_DRIVER

    def test_no_ref_install_fails(self, config, fake_client):
        dispatch = DriverDispatch.from_config(config, client=fake_client)
        result = dispatch.install(AppEntry(id="htop", refs={"linux": "htop"}))
        assert result.error == ErrorCode.NO_INSTALLABLE_REF.value
        assert fake_client.calls == []


class TestWingetClient:
    """Test the winget command-line client."""

    def test_parse_export(self):
        data = {
            "Sources": [
                {"Packages": [
                    {"PackageIdentifier": "Git.Git", "Version": "2.43.0"},
                    {"PackageIdentifier": "7zip.7zip"},
                ]},
            ]
        }
        assert parse_winget_export(data) == {"Git.Git": "2.43.0", "7zip.7zip": None}

    def test_list_installed_reads_export_file(self):
        def runner(command, **kwargs):
            output = command[command.index("--output") + 1]
            with open(output, "w", encoding="utf-8") as fh:
                json.dump({"Sources": [{"Packages": [{"PackageIdentifier": "Git.Git", "Version": "2.0"}]}]}, fh)
            return subprocess.CompletedProcess(command, 0, "", "")

        assert WingetClient(runner=runner).list_installed() == {"Git.Git": "2.0"}

    def test_list_installed_without_winget(self):
        def runner(command, **kwargs):
            raise FileNotFoundError("winget")

        with pytest.raises(DriverError) as exc:
            WingetClient(runner=runner).list_installed()
        assert exc.value.code is ErrorCode.PACKAGE_LIST_FAILED

    def test_upgrade_command(self):
        runner = MagicMock(return_value=subprocess.CompletedProcess([], 0, "", ""))
        result = WingetClient(runner=runner).install_or_upgrade("Git.Git", is_upgrade=True)

        assert result.success
        command = runner.call_args[0][0]
        assert command[:4] == ["winget", "upgrade", "--id", "Git.Git"]
        assert "--exact" in command

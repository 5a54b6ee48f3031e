"""Pytest configuration and fixtures."""

import json
from datetime import datetime, timezone

import pytest

from core.config import EngineConfig
from core.drivers import DriverDispatch, ProcessResult
from core.engine import ReconciliationEngine
from core.state import StateStore


class FakePackageManager:
    """In-memory package manager standing in for winget."""

    def __init__(
        self,
        installed: dict | None = None,
        failing: tuple[str, ...] = (),
        install_version: str | None = "1.0.0",
        upgrade_version: str | None = None,
    ):
        self.installed = dict(installed or {})
        self.failing = set(failing)
        self.install_version = install_version
        self.upgrade_version = upgrade_version
        self.calls: list[tuple[str, bool]] = []
        self.list_calls = 0

    def list_installed(self):
        self.list_calls += 1
        return dict(self.installed)

    def install_or_upgrade(self, package_id, is_upgrade):
        self.calls.append((package_id, is_upgrade))
        if package_id in self.failing:
            return ProcessResult(False, 1, error=f"winget exited with code 1 for {package_id}")
        if is_upgrade:
            if self.upgrade_version is not None:
                self.installed[package_id] = self.upgrade_version
        else:
            self.installed[package_id] = self.install_version
        return ProcessResult(True, 0)


class FixedClock:
    """Clock returning a fixed moment that tests can move forward."""

    def __init__(self, moment: datetime | None = None):
        self.moment = moment or datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.moment


@pytest.fixture
def fake_client():
    """Package manager with nothing installed."""
    return FakePackageManager()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def config(tmp_path):
    """Engine config rooted in a temporary directory."""
    return EngineConfig(
        root=tmp_path,
        state_dir=tmp_path / ".endstate",
        platform="windows",
        script_shell=("pwsh", "-File"),
    )


@pytest.fixture
def store(config):
    return StateStore(config.state_path)


@pytest.fixture
def make_engine(config, store, fake_client, clock):
    """Factory building an engine around a fake package manager."""

    def _make(client=None, sink=None, dispatch=None):
        dispatch = dispatch or DriverDispatch.from_config(config, client=client or fake_client)
        return ReconciliationEngine(config, dispatch, store, sink=sink, clock=clock)

    return _make


@pytest.fixture
def write_manifest(tmp_path):
    """Write a manifest dict to a .jsonc file and return its path."""

    def _write(data: dict, name: str = "manifest.jsonc"):
        path = tmp_path / name
        path.write_text(json.dumps(data, indent=2))
        return path

    return _write


@pytest.fixture
def sample_manifest_data():
    """Manifest with one standard-driver app."""
    return {
        "version": 1,
        "name": "workstation",
        "apps": [{"id": "git", "refs": {"default": "Git.Git"}}],
    }


@pytest.fixture
def make_client():
    """Factory for fake package managers with custom contents."""
    return FakePackageManager

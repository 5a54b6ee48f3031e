"""Engine configuration."""

import sys
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigError

DEFAULT_STATE_DIRNAME = ".endstate"
STATE_FILENAME = "state.json"

DEFAULT_SCRIPT_SHELL = ("pwsh", "-NoProfile", "-NonInteractive", "-File")


def detect_platform(platform: str | None = None) -> str:
    """Map a ``sys.platform`` value to the key used in manifest refs."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return "windows"
    if platform == "darwin":
        return "macos"
    return "linux"


@dataclass(frozen=True)
class EngineConfig:
    """Settings for one process, built once and passed to every component.

    Attributes:
        root: Trusted root directory. Custom install scripts must resolve
            inside it.
        state_dir: Directory holding the state file.
        platform: Key used to pick a per-platform ref from an app entry.
        script_shell: Command prefix used to run custom install scripts.
        driver_timeout: Seconds to wait for a package-manager call, or None.
    """

    root: Path
    state_dir: Path
    platform: str = field(default_factory=detect_platform)
    script_shell: tuple[str, ...] = DEFAULT_SCRIPT_SHELL
    driver_timeout: float | None = None

    @property
    def state_path(self) -> Path:
        return self.state_dir / STATE_FILENAME

    @classmethod
    def build(
        cls,
        root: str | Path | None = None,
        state_dir: str | Path | None = None,
        platform: str | None = None,
        script_shell: str | None = None,
        driver_timeout: float | None = None,
    ) -> "EngineConfig":
        """Build a config from loosely typed inputs (CLI options, env vars).

        Args:
            root: Trusted root, defaults to the current directory
            state_dir: State directory, defaults to ``<root>/.endstate``
            platform: Ref key override, defaults to the running platform
            script_shell: Space separated command prefix for custom scripts
            driver_timeout: Timeout for package-manager calls in seconds

        Returns:
            A frozen EngineConfig
        """
        root_path = Path(root).expanduser().resolve() if root else Path.cwd().resolve()
        if root_path.exists() and not root_path.is_dir():
            raise ConfigError(f"Root {root_path} is not a directory")

        if state_dir:
            state_path = Path(state_dir).expanduser().resolve()
        else:
            state_path = root_path / DEFAULT_STATE_DIRNAME

        shell = tuple(script_shell.split()) if script_shell else DEFAULT_SCRIPT_SHELL
        if not shell:
            raise ConfigError("Script shell must not be empty")

        if driver_timeout is not None and driver_timeout <= 0:
            raise ConfigError("Driver timeout must be positive")

        return cls(
            root=root_path,
            state_dir=state_path,
            platform=(platform or detect_platform()).lower(),
            script_shell=shell,
            driver_timeout=driver_timeout,
        )

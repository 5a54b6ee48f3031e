"""Manifest loading, include resolution and hashing.

Manifests are JSON with comments (``.jsonc``/``.json``) or YAML
(``.yaml``/``.yml``). A manifest may list ``includes``; included apps come
first, in include order, followed by the including manifest's own apps.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ErrorCode, ManifestError
from .models import AppEntry, CustomConfig, DetectRule, Driver, Manifest
from .versions import parse_constraint

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")


class DetectRuleDocument(BaseModel):
    type: str = Field(pattern="^(file|registry)$")
    path: str = Field(min_length=1)


class CustomDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    install_script: str | None = Field(default=None, alias="installScript")
    detect: DetectRuleDocument | None = None


class AppDocument(BaseModel):
    """One entry of the ``apps`` list as written in a manifest file."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    driver: Driver = Driver.WINGET
    refs: dict[str, str] = Field(default_factory=dict)
    version: str | None = None
    custom: CustomDocument | None = None

    @field_validator("version", mode="before")
    @classmethod
    def _check_version(cls, value: Any) -> Any:
        if value is None:
            return value
        # YAML reads "version: 1.10" as the float 1.1
        if not isinstance(value, str):
            raise ValueError(f"version {value!r} must be a string, quote it (\"1.10\")")
        parse_constraint(value)
        return value

    @field_validator("driver", mode="before")
    @classmethod
    def _default_driver(cls, value: Any) -> Any:
        if value is None or value == "":
            return Driver.WINGET
        if isinstance(value, str):
            return value.lower()
        return value


class ManifestDocument(BaseModel):
    """Top-level manifest document."""

    model_config = ConfigDict(extra="allow")

    version: int = 1
    name: str = ""
    apps: list[AppDocument] = Field(default_factory=list)
    includes: list[str] = Field(default_factory=list)
    restore: list[Any] = Field(default_factory=list)
    verify: list[Any] = Field(default_factory=list)


def strip_json_comments(content: str) -> str:
    """Remove ``//`` and ``/* */`` comments and trailing commas outside strings."""
    out: list[str] = []
    i = 0
    length = len(content)
    in_string = False

    while i < length:
        char = content[i]
        nxt = content[i + 1] if i + 1 < length else ""

        if in_string:
            out.append(char)
            if char == "\\" and nxt:
                out.append(nxt)
                i += 2
                continue
            if char == '"':
                in_string = False
            i += 1
            continue

        if char == '"':
            in_string = True
            out.append(char)
            i += 1
        elif char == "/" and nxt == "/":
            while i < length and content[i] not in "\r\n":
                i += 1
        elif char == "/" and nxt == "*":
            end = content.find("*/", i + 2)
            i = length if end == -1 else end + 2
        elif char in "}]":
            # drop a trailing comma before a closing bracket
            j = len(out) - 1
            while j >= 0 and out[j].isspace():
                j -= 1
            if j >= 0 and out[j] == ",":
                del out[j]
            out.append(char)
            i += 1
        else:
            out.append(char)
            i += 1

    return "".join(out)


def normalize_newlines(content: str) -> str:
    return content.replace("\r\n", "\n").replace("\r", "\n")


def hash_manifest(path: str | Path) -> str:
    """Hash a manifest file so identical content hashes equally on every platform.

    Args:
        path: Manifest file path

    Returns:
        Hex SHA-256 of the UTF-8 content with line endings normalized to LF
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise ManifestError(
            f"Cannot read manifest {path}: {e}", ErrorCode.MANIFEST_NOT_FOUND
        ) from e
    return hashlib.sha256(normalize_newlines(content).encode("utf-8")).hexdigest()


class ManifestLoader:
    """Loads a manifest file and everything it includes."""

    def __init__(self):
        self._stack: list[Path] = []

    def _read_document(self, path: Path) -> ManifestDocument:
        if not path.is_file():
            raise ManifestError(
                f"Manifest {path} not found", ErrorCode.MANIFEST_NOT_FOUND
            )

        try:
            content = path.read_text(encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestError(f"Cannot read manifest {path}: {e}") from e

        try:
            if path.suffix.lower() in YAML_SUFFIXES:
                raw = yaml.safe_load(content)
            else:
                raw = json.loads(strip_json_comments(content))
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ManifestError(f"Cannot parse manifest {path}: {e}") from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ManifestError(f"Manifest {path} must contain an object")

        try:
            return ManifestDocument.model_validate(raw)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            raise ManifestError(f"Invalid manifest {path}: {problems}") from e

    def _to_entry(self, app: AppDocument) -> AppEntry:
        custom = None
        if app.custom is not None:
            detect = None
            if app.custom.detect is not None:
                detect = DetectRule(type=app.custom.detect.type, path=app.custom.detect.path)
            custom = CustomConfig(install_script=app.custom.install_script, detect=detect)

        return AppEntry(
            id=app.id,
            driver=app.driver,
            refs={key.lower(): value for key, value in app.refs.items() if value},
            version=app.version,
            custom=custom,
        )

    def _load(self, path: Path) -> tuple[ManifestDocument, list[AppEntry], list, list]:
        resolved = path.resolve()
        if resolved in self._stack:
            chain = " -> ".join(str(p) for p in [*self._stack, resolved])
            raise ManifestError(
                f"Include cycle: {chain}", ErrorCode.MANIFEST_INCLUDE_CYCLE
            )

        self._stack.append(resolved)
        try:
            document = self._read_document(resolved)
            apps: dict[str, AppEntry] = {}
            restore: list = []
            verify: list = []

            for include in document.includes:
                include_path = (resolved.parent / include).resolve()
                logger.debug("Resolving include %s from %s", include_path, resolved)
                _, included_apps, included_restore, included_verify = self._load(include_path)
                for entry in included_apps:
                    apps[entry.id] = entry
                restore.extend(included_restore)
                verify.extend(included_verify)

            for app in document.apps:
                if app.id in apps:
                    logger.debug("App %s redefined in %s", app.id, resolved)
                apps[app.id] = self._to_entry(app)
            restore.extend(document.restore)
            verify.extend(document.verify)

            return document, list(apps.values()), restore, verify
        finally:
            self._stack.pop()

    def load(self, path: str | Path) -> Manifest:
        path = Path(path)
        document, apps, restore, verify = self._load(path)
        logger.debug("Loaded manifest %s with %d apps", path, len(apps))
        return Manifest(
            version=document.version,
            name=document.name,
            apps=apps,
            path=str(path.resolve()),
            restore=restore,
            verify=verify,
            includes=list(document.includes),
        )


def load_manifest(path: str | Path) -> Manifest:
    """Load a manifest file, resolving includes.

    Args:
        path: Manifest file path (.jsonc, .json, .yaml or .yml)

    Returns:
        Parsed Manifest

    Raises:
        ManifestError: if the file or any include is missing or malformed
    """
    return ManifestLoader().load(path)

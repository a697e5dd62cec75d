"""Configuration loading utilities for the folder event daemon."""
from __future__ import annotations

import logging
import os
import shlex
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import Any, List, Optional, Tuple

import yaml # type: ignore

from .events import EventKind


logger = logging.getLogger(__name__)

APP_NAME = "stfed"


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


class PathFilter:
    """Glob pattern matched against paths relative to a folder.

    Each ``/`` separated segment is matched with :func:`fnmatch.fnmatchcase`,
    so ``*`` and ``?`` never cross a ``/``. A ``**`` segment matches any
    number of directories.
    """

    def __init__(self, pattern: str):
        self.pattern = pattern
        self._segments: Tuple[str, ...] = tuple(pattern.split("/"))

    def matches(self, relative_path: PurePosixPath) -> bool:
        return _match_segments(self._segments, relative_path.parts)

    def __repr__(self) -> str:
        return f"PathFilter({self.pattern!r})"


@dataclass
class SyncthingConfig:
    """Where and how to reach the Syncthing REST API."""

    url: str
    api_key: str


@dataclass
class HookConfig:
    """A command bound to one (event kind, folder) pair."""

    folder: Path
    event: EventKind
    command: List[str]
    filter: Optional[PathFilter] = None
    allow_concurrent: bool = False


@dataclass
class AppConfig:
    """Top-level configuration structure."""

    syncthing: SyncthingConfig
    hooks: List[HookConfig] = field(default_factory=list)


def default_config_path() -> Path:
    return _xdg_dir("XDG_CONFIG_HOME", ".config") / APP_NAME / "config.yaml"


def normalize_folder(raw: str) -> Path:
    """Return the canonical form used to compare folder paths."""

    return Path(raw).expanduser().resolve()


def load_config(path: Path) -> AppConfig:
    """Load and validate the YAML configuration file."""

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML configuration: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    raw_syncthing = data.get("syncthing")
    if raw_syncthing is None:
        logger.warning("No 'syncthing' section in %s, reading local Syncthing configuration", path)
        syncthing_cfg = syncthing_config_from_local_install()
    else:
        syncthing_cfg = _parse_syncthing_config(raw_syncthing)

    if "hooks" not in data:
        raise ConfigError("'hooks' section is required")
    hooks_cfg = _parse_hooks_config(data["hooks"])

    return AppConfig(syncthing=syncthing_cfg, hooks=hooks_cfg)


def syncthing_config_from_local_install() -> SyncthingConfig:
    """Guess the API address and key from Syncthing's own config.xml."""

    candidates = [
        _xdg_dir("XDG_STATE_HOME", ".local/state") / "syncthing" / "config.xml",
        _xdg_dir("XDG_CONFIG_HOME", ".config") / "syncthing" / "config.xml",
    ]
    for candidate in candidates:
        if candidate.is_file():
            logger.debug("Found Syncthing config in %s", candidate)
            return parse_syncthing_xml(candidate)
    raise ConfigError(
        "Unable to find Syncthing config.xml, please add a 'syncthing' section "
        f"with 'url' and 'api_key' to the {APP_NAME} configuration"
    )


def parse_syncthing_xml(path: Path) -> SyncthingConfig:
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as exc:
        raise ConfigError(f"Failed to read Syncthing configuration {path}: {exc}") from exc

    gui = root.find("gui")
    address = gui.findtext("address") if gui is not None else None
    api_key = gui.findtext("apikey") if gui is not None else None
    if not address or not api_key:
        raise ConfigError(f"Syncthing configuration {path} has no GUI address or API key")

    if "://" not in address:
        scheme = "https" if gui is not None and gui.get("tls") == "true" else "http"
        address = f"{scheme}://{address}"
    return SyncthingConfig(url=address, api_key=api_key.strip())


def _parse_syncthing_config(raw: Any) -> SyncthingConfig:
    if not isinstance(raw, dict):
        raise ConfigError("'syncthing' section must be a mapping")

    url = raw.get("url")
    api_key = raw.get("api_key")
    if not isinstance(url, str) or not url:
        raise ConfigError("syncthing.url must be a non-empty string")
    if "://" not in url:
        raise ConfigError("syncthing.url must include a scheme, e.g. http://127.0.0.1:8384")
    if not isinstance(api_key, str) or not api_key:
        raise ConfigError("syncthing.api_key must be a non-empty string")
    return SyncthingConfig(url=url, api_key=api_key)


def _parse_hooks_config(raw: Any) -> List[HookConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("'hooks' section must be a list")

    hooks: List[HookConfig] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"hooks[{index}] must be a mapping")

        folder_raw = item.get("folder")
        if not isinstance(folder_raw, str) or not folder_raw:
            raise ConfigError(f"hooks[{index}].folder must be a non-empty string")

        event_raw = item.get("event")
        try:
            event = EventKind(event_raw)
        except ValueError as exc:
            allowed = ", ".join(option.value for option in EventKind)
            raise ConfigError(f"hooks[{index}].event must be one of: {allowed}") from exc

        command = _parse_command(item.get("command"), field_name=f"hooks[{index}].command")

        filter_raw = item.get("filter")
        path_filter: Optional[PathFilter] = None
        if filter_raw is not None:
            if not isinstance(filter_raw, str) or not filter_raw:
                raise ConfigError(f"hooks[{index}].filter must be a non-empty string")
            if event is EventKind.FOLDER_DOWN_SYNC_DONE:
                logger.warning("hooks[%s].filter is ignored for %s hooks", index, event.value)
            else:
                path_filter = PathFilter(filter_raw)

        allow_concurrent = item.get("allow_concurrent", False)
        if allow_concurrent is None:
            allow_concurrent = False
        if not isinstance(allow_concurrent, bool):
            raise ConfigError(f"hooks[{index}].allow_concurrent must be a boolean")

        hook_cfg = HookConfig(
            folder=normalize_folder(folder_raw),
            event=event,
            command=command,
            filter=path_filter,
            allow_concurrent=allow_concurrent,
        )
        logger.info(
            "Loaded hook %s for %s in %s (filter=%s, allow_concurrent=%s)",
            shlex.join(hook_cfg.command),
            hook_cfg.event.value,
            hook_cfg.folder,
            filter_raw,
            hook_cfg.allow_concurrent,
        )
        hooks.append(hook_cfg)

    return hooks


def _parse_command(value: Any, *, field_name: str) -> List[str]:
    if isinstance(value, str):
        try:
            argv = shlex.split(value)
        except ValueError as exc:
            raise ConfigError(f"{field_name} is not a valid command: {value!r}") from exc
    elif isinstance(value, list):
        if not all(isinstance(elem, str) for elem in value):
            raise ConfigError(f"{field_name} must contain only strings")
        argv = list(value)
    else:
        raise ConfigError(f"{field_name} must be a string or a list of strings")

    if not argv:
        raise ConfigError(f"{field_name} must not be empty")
    return argv


def _xdg_dir(env_var: str, default: str) -> Path:
    value = os.environ.get(env_var)
    if value:
        return Path(value)
    return Path.home() / default


def _match_segments(segments: Tuple[str, ...], parts: Tuple[str, ...]) -> bool:
    if not segments:
        return not parts
    head, rest = segments[0], segments[1:]
    if head == "**":
        return any(_match_segments(rest, parts[index:]) for index in range(len(parts) + 1))
    return bool(parts) and fnmatchcase(parts[0], head) and _match_segments(rest, parts[1:])

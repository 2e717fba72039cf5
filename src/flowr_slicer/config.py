"""TOML config loading for flowr-slicer.toml and editor settings."""

from __future__ import annotations

import copy
import shlex
import tomllib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowr_slicer.errors import ConfigError

CONFIG_FILENAME = "flowr-slicer.toml"

SLICE_DISPLAYS = ("text", "diff")


@dataclass
class ServerConfig:
    host: str = "localhost"
    port: int = 1042
    auto_connect: bool = False
    connect_timeout: float = 10.0


@dataclass
class LocalConfig:
    command: list[str] = field(default_factory=lambda: ["flowr", "--stdio"])
    r_executable: str = ""
    startup_timeout: float = 30.0

    def argv(self) -> list[str]:
        """Command line used to spawn the local engine."""
        argv = list(self.command)
        if self.r_executable:
            argv.extend(["--r-path", self.r_executable])
        return argv


@dataclass
class SessionConfig:
    request_timeout: float = 60.0
    min_flowr_version: str = "1.5.2"


@dataclass
class StyleConfig:
    slice_opacity: float = 0.25
    slice_display: str = "text"


@dataclass
class SlicerConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    style: StyleConfig = field(default_factory=StyleConfig)
    verbose_log: bool = False

    def validate(self) -> SlicerConfig:
        if not 0 < self.server.port < 65536:
            raise ConfigError("server.port", f"not a valid port: {self.server.port}")
        for key, value in (
            ("server.connect_timeout", self.server.connect_timeout),
            ("local.startup_timeout", self.local.startup_timeout),
            ("session.request_timeout", self.session.request_timeout),
        ):
            if value <= 0:
                raise ConfigError(key, f"must be positive, got {value}")
        if not self.local.command:
            raise ConfigError("local.command", "must not be empty")
        if not 0.0 <= self.style.slice_opacity <= 1.0:
            raise ConfigError("style.slice_opacity", "must be between 0 and 1")
        if self.style.slice_display not in SLICE_DISPLAYS:
            raise ConfigError(
                "style.slice_display",
                f"expected one of {', '.join(SLICE_DISPLAYS)}, got {self.style.slice_display!r}",
            )
        return self


def find_config(start_path: Path | None = None) -> Path:
    """Walk up directories to find flowr-slicer.toml. Raises FileNotFoundError."""
    path = (start_path or Path.cwd()).resolve()
    if path.is_file():
        path = path.parent
    while True:
        candidate = path / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        parent = path.parent
        if parent == path:
            raise FileNotFoundError(f"No {CONFIG_FILENAME} found in any parent directory")
        path = parent


def _command(value: Any) -> list[str]:
    if isinstance(value, str):
        return shlex.split(value)
    return [str(v) for v in value]


def _value(
    table: dict[str, Any], section: str, key: str, default: Any, convert: Callable[[Any], Any],
) -> Any:
    try:
        return convert(table.get(key, default))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{section}.{key}" if section else key, str(e)) from e


def load_config(path: Path) -> SlicerConfig:
    """Parse a flowr-slicer.toml file into a SlicerConfig."""
    with open(path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(str(path), str(e)) from e

    config = SlicerConfig()

    if "server" in data:
        srv = data["server"]
        config.server = ServerConfig(
            host=_value(srv, "server", "host", "localhost", str),
            port=_value(srv, "server", "port", 1042, int),
            auto_connect=_value(srv, "server", "auto_connect", False, bool),
            connect_timeout=_value(srv, "server", "connect_timeout", 10.0, float),
        )

    if "local" in data:
        loc = data["local"]
        config.local = LocalConfig(
            command=_value(loc, "local", "command", ["flowr", "--stdio"], _command),
            r_executable=_value(loc, "local", "r_executable", "", str),
            startup_timeout=_value(loc, "local", "startup_timeout", 30.0, float),
        )

    if "session" in data:
        ses = data["session"]
        config.session = SessionConfig(
            request_timeout=_value(ses, "session", "request_timeout", 60.0, float),
            min_flowr_version=_value(ses, "session", "min_flowr_version", "1.5.2", str),
        )

    if "style" in data:
        sty = data["style"]
        config.style = StyleConfig(
            slice_opacity=_value(sty, "style", "slice_opacity", 0.25, float),
            slice_display=_value(sty, "style", "slice_display", "text", str),
        )

    config.verbose_log = _value(data, "", "verbose_log", False, bool)
    return config.validate()


def load_default_config(start_path: Path | None = None) -> SlicerConfig:
    """Load the nearest flowr-slicer.toml, or the defaults if there is none."""
    try:
        return load_config(find_config(start_path))
    except FileNotFoundError:
        return SlicerConfig()


# Editor setting keys (as sent in initializationOptions) → setter
_SETTINGS = {
    "server.host": lambda c, v: setattr(c.server, "host", str(v)),
    "server.port": lambda c, v: setattr(c.server, "port", int(v)),
    "server.autoConnect": lambda c, v: setattr(c.server, "auto_connect", bool(v)),
    "server.connectTimeout": lambda c, v: setattr(c.server, "connect_timeout", float(v)),
    "r.executable": lambda c, v: setattr(c.local, "r_executable", str(v)),
    "local.command": lambda c, v: setattr(c.local, "command", _command(v)),
    "style.sliceOpacity": lambda c, v: setattr(c.style, "slice_opacity", float(v)),
    "style.sliceDisplay": lambda c, v: setattr(c.style, "slice_display", str(v)),
    "verboseLog": lambda c, v: setattr(c, "verbose_log", bool(v)),
}


def _flatten(settings: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in settings.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{name}."))
        else:
            flat[name] = value
    return flat


def apply_settings(config: SlicerConfig, settings: dict[str, Any] | None) -> SlicerConfig:
    """Return a copy of ``config`` overridden by editor settings, dotted or nested.

    Unknown keys are ignored.
    """
    if not settings:
        return config
    config = copy.deepcopy(config)
    flat = _flatten(settings)
    for key, value in flat.items():
        key = key.removeprefix("vscode-flowr.")
        setter = _SETTINGS.get(key)
        if setter is None or value is None:
            continue
        try:
            setter(config, value)
        except (TypeError, ValueError) as e:
            raise ConfigError(key, str(e)) from e
    return config.validate()

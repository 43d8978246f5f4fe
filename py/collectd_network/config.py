"""設定ファイルから collectd リスナーの起動設定を読み込む。"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import tomllib

from .auth import AuthFile
from .codec import DEFAULT_BUFFER_SIZE, DEFAULT_IPV4_ADDRESS, DEFAULT_SERVICE, SecurityLevel
from .dispatch import DEFAULT_MAX_PENDING, DEFAULT_WORKERS
from .server import ServerOptions

DEFAULT_ADDRESS = f"{DEFAULT_IPV4_ADDRESS}:{DEFAULT_SERVICE}"


@dataclass(frozen=True)
class ListenerConfig:
    address: str
    interface: str | None
    buffer_size: int
    security_level: SecurityLevel
    auth_file: Path | None
    workers: int
    max_pending: int
    log_level: str

    def server_options(self) -> ServerOptions:
        return ServerOptions(
            password_lookup=AuthFile(self.auth_file) if self.auth_file else None,
            interface=self.interface,
            buffer_size=self.buffer_size,
            security_level=self.security_level,
            workers=self.workers,
            max_pending=self.max_pending,
        )


class ConfigError(ValueError):
    """設定がおかしいときに投げる例外。"""


def load_config(path: str | Path) -> ListenerConfig:
    data = _read_toml(path)
    server_data = data.get("server", {})
    base_dir = Path(path).resolve().parent

    address = _require_str(server_data, "address", default=DEFAULT_ADDRESS)
    interface = _optional_str(server_data, "interface")
    buffer_size = _require_int(server_data, "buffer_size", default=DEFAULT_BUFFER_SIZE, allow_zero=True)
    if buffer_size > 65535:
        raise ConfigError("buffer_size must not exceed 65535")
    security_level = _require_security_level(server_data, "security_level")
    auth_file = _optional_path(server_data, "auth_file", base_dir=base_dir)
    if security_level > SecurityLevel.NONE and auth_file is None:
        raise ConfigError(f"security_level {security_level.name.lower()} requires auth_file")
    workers = _require_int(server_data, "workers", default=DEFAULT_WORKERS)
    max_pending = _require_int(server_data, "max_pending", default=DEFAULT_MAX_PENDING, allow_zero=True)
    log_level = _require_str(server_data, "log_level", default="INFO").upper()

    return ListenerConfig(
        address=address,
        interface=interface,
        buffer_size=buffer_size,
        security_level=security_level,
        auth_file=auth_file,
        workers=workers,
        max_pending=max_pending,
        log_level=log_level,
    )


def _read_toml(path: str | Path) -> dict[str, Any]:
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise ConfigError(f"configuration file not found: {cfg_path}")
    with cfg_path.open("rb") as fh:
        try:
            return tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"invalid TOML in {cfg_path}: {exc}") from exc


def _require_str(data: dict[str, Any], key: str, *, default: str | None = None) -> str:
    if key not in data:
        if default is None:
            raise ConfigError(f"{key} is required")
        return default
    value = data[key]
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    if key not in data:
        return None
    return _require_str(data, key)


def _require_int(data: dict[str, Any], key: str, *, default: int, allow_zero: bool = False) -> int:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{key} must be a positive integer")
    return value


def _require_security_level(data: dict[str, Any], key: str) -> SecurityLevel:
    raw = _require_str(data, key, default="none")
    try:
        return SecurityLevel.from_name(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be one of none, sign, encrypt") from exc


def _optional_path(data: dict[str, Any], key: str, *, base_dir: Path) -> Path | None:
    if key not in data:
        return None
    path = Path(_require_str(data, key))
    if not path.is_absolute():
        path = base_dir / path
    if not path.exists():
        raise ConfigError(f"{key} not found: {path}")
    return path

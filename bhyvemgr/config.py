"""Client configuration loading for bhyve-vm-manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from bhyvemgr.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_CONFIGURATION_DIRECTORY,
    DEFAULT_EXECUTABLES,
    DEFAULT_RUNTIME_DIRECTORY,
    ZFS_VOLUME_DEFAULT_SIZE,
    ZFS_VOLUME_SIZE_MULTIPLE,
)
from bhyvemgr.exceptions import ManagerError, ValidationError
from bhyvemgr.utils import get_env, log, parse_int_env

ENV_PREFIX = "BHYVEMGR_"


@dataclass(frozen=True)
class ClientConfiguration:
    configuration_directory: Path = DEFAULT_CONFIGURATION_DIRECTORY
    runtime_directory: Path = DEFAULT_RUNTIME_DIRECTORY
    zfs_root: Optional[str] = None
    zfs_volume_default_size: int = ZFS_VOLUME_DEFAULT_SIZE
    executables: Dict[str, Path] = field(default_factory=lambda: dict(DEFAULT_EXECUTABLES))

    def executable(self, name: str) -> Path:
        return self.executables[name]

    def machine_runtime_directory(self, machine_id) -> Path:
        return self.runtime_directory / str(machine_id)


def _absolute(key: str, raw) -> Path:
    path = Path(str(raw))
    if not path.is_absolute():
        raise ValidationError(f"{key} must be an absolute path (got '{raw}')")
    return path


def _read_file(config_path: Path) -> dict:
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Client configuration {config_path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ManagerError(f"Cannot read client configuration {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"Client configuration {config_path} must be a YAML mapping")
    return data


def load_client_configuration(config_path: Optional[Path] = None) -> ClientConfiguration:
    """Read the client configuration file, then apply BHYVEMGR_* environment overrides."""
    if config_path is None:
        env_path = get_env(f"{ENV_PREFIX}CONFIG")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        log("DEBUG", f"Loading client configuration from {config_path}")
        data = _read_file(config_path)
    else:
        log("DEBUG", f"No client configuration at {config_path}; using defaults")
        data = {}

    known = {
        "virtual_machine_configuration_directory",
        "virtual_machine_runtime_directory",
        "zfs_root",
        "zfs_volume_default_size",
        "executables",
    }
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(f"Unknown client configuration key(s): {', '.join(unknown)}")

    configuration_directory = _absolute(
        "virtual_machine_configuration_directory",
        get_env(
            f"{ENV_PREFIX}CONFIGURATION_DIRECTORY",
            data.get("virtual_machine_configuration_directory", str(DEFAULT_CONFIGURATION_DIRECTORY)),
        ),
    )
    runtime_directory = _absolute(
        "virtual_machine_runtime_directory",
        get_env(
            f"{ENV_PREFIX}RUNTIME_DIRECTORY",
            data.get("virtual_machine_runtime_directory", str(DEFAULT_RUNTIME_DIRECTORY)),
        ),
    )

    zfs_root = get_env(f"{ENV_PREFIX}ZFS_ROOT", data.get("zfs_root"))
    if zfs_root is not None:
        zfs_root = str(zfs_root).strip().strip("/") or None

    default_size = parse_int_env(
        f"{ENV_PREFIX}ZFS_VOLUME_DEFAULT_SIZE",
        str(data.get("zfs_volume_default_size", ZFS_VOLUME_DEFAULT_SIZE)),
        min_val=ZFS_VOLUME_SIZE_MULTIPLE,
    )
    if default_size % ZFS_VOLUME_SIZE_MULTIPLE != 0:
        raise ValidationError(
            f"zfs_volume_default_size must be a multiple of {ZFS_VOLUME_SIZE_MULTIPLE} (got {default_size})"
        )

    file_executables = data.get("executables") or {}
    if not isinstance(file_executables, dict):
        raise ValidationError("executables must be a mapping of tool name to absolute path")
    unknown = sorted(set(file_executables) - set(DEFAULT_EXECUTABLES))
    if unknown:
        raise ValidationError(
            f"Unknown executable(s): {', '.join(unknown)}. Supported: {', '.join(DEFAULT_EXECUTABLES)}"
        )
    executables: Dict[str, Path] = {}
    for name, default in DEFAULT_EXECUTABLES.items():
        raw = get_env(f"{ENV_PREFIX}{name.upper()}", file_executables.get(name, str(default)))
        executables[name] = _absolute(f"executables.{name}", raw)

    return ClientConfiguration(
        configuration_directory=configuration_directory,
        runtime_directory=runtime_directory,
        zfs_root=zfs_root,
        zfs_volume_default_size=default_size,
        executables=executables,
    )

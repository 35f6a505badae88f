"""Storage backend paths and realization for bhyve-vm-manager."""

from __future__ import annotations

import subprocess
from pathlib import Path, PurePosixPath
from typing import List, Optional

from bhyvemgr.config import ClientConfiguration
from bhyvemgr.constants import ZFS_VOLUME_DEFAULT_SIZE
from bhyvemgr.exceptions import (
    ManagerError,
    NonexistentError,
    ProcessFailureError,
    UnimplementedError,
    ValidationError,
    combine,
)
from bhyvemgr.models import (
    STORAGE_DEVICE_TYPES,
    FileStorage,
    SCSIStorage,
    StorageBackend,
    VirtualMachine,
    ZFSVolumeStorage,
)
from bhyvemgr.utils import ensure_directory, log, run


def zfs_volume_path(root, machine_id, device_id: int) -> PurePosixPath:
    """Name of the volume backing one device: <root>/<machine id>/disk-<device id>."""
    return PurePosixPath(str(root)) / str(machine_id) / f"disk-{device_id}"


class ZFSTool:
    """Thin wrapper over the zfs command line."""

    def __init__(self, executable: Path):
        self.executable = executable

    def _zfs(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            return run([str(self.executable), *args], check=check, capture_output=True)
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip()
            raise ProcessFailureError(f"zfs {' '.join(args)} failed with status {exc.returncode}: {detail}")
        except OSError as exc:
            raise ProcessFailureError(f"Cannot run {self.executable}: {exc}")

    def exists(self, name: str) -> bool:
        return self._zfs("list", "-H", "-o", "name", name, check=False).returncode == 0

    def volume_size(self, name: str) -> int:
        out = self._zfs("get", "-H", "-p", "-o", "value", "volsize", name).stdout.strip()
        try:
            return int(out)
        except ValueError:
            raise ProcessFailureError(f"Unexpected volsize '{out}' reported for {name}")

    def create_volume(self, name: str, size: int) -> None:
        self._zfs("create", "-V", str(size), name)

    def create_filesystem(self, name: str) -> None:
        self._zfs("create", name)


def _zfs_root(config: ClientConfiguration) -> str:
    if not config.zfs_root:
        raise ValidationError("ZFS volumes require zfs_root to be set in the client configuration")
    return config.zfs_root


def zfs_volume_name(config: ClientConfiguration, machine: VirtualMachine, device) -> str:
    return str(zfs_volume_path(_zfs_root(config), machine.id, device.slot.device_id))


def storage_device_path(config: ClientConfiguration, machine: VirtualMachine, device) -> Path:
    """Host path bhyve opens for a storage device."""
    backend = device.backend
    if isinstance(backend, FileStorage):
        return backend.path
    if isinstance(backend, ZFSVolumeStorage):
        return Path("/dev/zvol") / zfs_volume_name(config, machine, device)
    if isinstance(backend, SCSIStorage):
        raise UnimplementedError("SCSI storage backends are not implemented")
    raise TypeError(f"Unknown storage backend: {backend!r}")


def realize_backend(
    zfs: ZFSTool,
    backend: StorageBackend,
    target: str,
    expected_size: Optional[int],
    dry_run: bool = False,
    default_size: int = ZFS_VOLUME_DEFAULT_SIZE,
) -> str:
    """Make sure the storage behind one device exists and return what was done."""
    if isinstance(backend, FileStorage):
        if dry_run:
            return f"check that {target} exists"
        if not Path(target).exists():
            raise NonexistentError(f"Storage file {target} does not exist")
        log("INFO", f"Storage file {target} exists")
        return f"checked {target}"

    if isinstance(backend, ZFSVolumeStorage):
        size = expected_size if expected_size is not None else default_size
        if dry_run:
            return f"ensure ZFS volume {target} exists with size {size}"
        if not zfs.exists(target):
            zfs.create_volume(target, size)
            log("SUCCESS", f"Created ZFS volume {target} ({size} bytes)")
            return f"created {target}"
        actual = zfs.volume_size(target)
        if expected_size is not None and actual != expected_size:
            log(
                "WARN",
                f"ZFS volume {target} has size {actual} but {expected_size} was expected; leaving it as-is",
            )
        return f"kept {target}"

    if isinstance(backend, SCSIStorage):
        raise UnimplementedError("SCSI storage backends are not implemented")
    raise TypeError(f"Unknown storage backend: {backend!r}")


def realize_runtime_directory(
    config: ClientConfiguration, zfs: ZFSTool, machine: VirtualMachine, dry_run: bool = False
) -> str:
    directory = config.machine_runtime_directory(machine.id)
    if config.zfs_root:
        dataset = f"{config.zfs_root}/{machine.id}"
        if dry_run:
            return f"ensure ZFS filesystem {dataset} exists"
        if not zfs.exists(dataset):
            zfs.create_filesystem(dataset)
            log("SUCCESS", f"Created ZFS filesystem {dataset}")
            return f"created {dataset}"
        return f"kept {dataset}"
    if dry_run:
        return f"ensure directory {directory} exists"
    ensure_directory(directory)
    return f"ensured {directory}"


def realize_machine(
    config: ClientConfiguration,
    machine: VirtualMachine,
    dry_run: bool = False,
    zfs: Optional[ZFSTool] = None,
) -> List[str]:
    """Realize the runtime directory and every storage device, collecting all failures."""
    if zfs is None:
        zfs = ZFSTool(config.executable("zfs"))
    actions: List[str] = []
    errors: List[ManagerError] = []
    try:
        actions.append(realize_runtime_directory(config, zfs, machine, dry_run))
    except ManagerError as exc:
        errors.append(exc)
    except OSError as exc:
        errors.append(ProcessFailureError(f"Cannot create runtime directory: {exc}"))

    for device in machine.devices.values():
        if not isinstance(device, STORAGE_DEVICE_TYPES):
            continue
        backend = device.backend
        try:
            if isinstance(backend, ZFSVolumeStorage):
                target = zfs_volume_name(config, machine, device)
                size = backend.expected_size
            elif isinstance(backend, FileStorage):
                target = str(backend.path)
                size = None
            else:
                target, size = "", None
            actions.append(
                realize_backend(zfs, backend, target, size, dry_run, config.zfs_volume_default_size)
            )
        except ManagerError as exc:
            errors.append(exc)

    if dry_run:
        for action in actions:
            log("INFO", f"[dry-run] {action}")
    if errors:
        raise combine(errors, ProcessFailureError)
    return actions

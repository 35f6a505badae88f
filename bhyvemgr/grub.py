"""GRUB device maps and configuration files for grub-bhyve."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from bhyvemgr.config import ClientConfiguration
from bhyvemgr.constants import GRUB_CONFIG_HEADER, GRUB_CONFIG_NAME, GRUB_DEVICE_MAP_NAME
from bhyvemgr.exceptions import NonexistentError, ValidationError
from bhyvemgr.models import (
    AHCIOpticalDisk,
    DeviceSlot,
    GRUBBhyveBoot,
    LinuxKernel,
    OpenBSDKernel,
    STORAGE_DEVICE_TYPES,
    VirtualMachine,
    boot_configuration_slots,
)
from bhyvemgr.processes import ProcessDescription
from bhyvemgr.storage import storage_device_path


class GRUBDrive(NamedTuple):
    name: str  # "hd0", "cd1", ...
    path: Path

    @property
    def index(self) -> int:
        return int(self.name[2:])

    @property
    def is_optical(self) -> bool:
        return self.name.startswith("cd")


def grub_device_map(
    config: ClientConfiguration, machine: VirtualMachine, boot: GRUBBhyveBoot
) -> Dict[DeviceSlot, GRUBDrive]:
    """Number the boot configuration's disks hdN and optical disks cdN, in slot order."""
    drives: Dict[DeviceSlot, GRUBDrive] = {}
    disks = optical = 0
    for slot in sorted(boot_configuration_slots(boot)):
        device = machine.devices.get(slot)
        if device is None:
            raise NonexistentError(f"Boot configuration '{boot.name}' refers to nonexistent device {slot}")
        if not isinstance(device, STORAGE_DEVICE_TYPES):
            raise ValidationError(f"Boot configuration '{boot.name}' refers to non-storage device {slot}")
        path = storage_device_path(config, machine, device)
        if isinstance(device, AHCIOpticalDisk):
            drives[slot] = GRUBDrive(f"cd{optical}", path)
            optical += 1
        else:
            drives[slot] = GRUBDrive(f"hd{disks}", path)
            disks += 1
    return drives


def render_device_map(drives: Dict[DeviceSlot, GRUBDrive]) -> str:
    lines = [f"({drive.name}) {drive.path}" for drive in drives.values()]
    return "\n".join(lines) + "\n"


def render_grub_config(boot: GRUBBhyveBoot, drives: Dict[DeviceSlot, GRUBDrive]) -> str:
    lines: List[str] = [GRUB_CONFIG_HEADER]
    kernel = boot.kernel
    if isinstance(kernel, LinuxKernel):
        kernel_drive = drives[kernel.kernel_device]
        initrd_drive = drives[kernel.initrd_device]
        lines.append(" ".join([f"linux ({kernel_drive.name}){kernel.kernel_path}", *kernel.arguments]))
        lines.append(f"initrd ({initrd_drive.name}){kernel.initrd_path}")
    elif isinstance(kernel, OpenBSDKernel):
        drive = drives[kernel.boot_device]
        if drive.is_optical:
            lines.append(f"kopenbsd -h com0 ({drive.name}){kernel.kernel_path}")
        else:
            lines.append(
                f"kopenbsd -h com0 -r sd{drive.index}a ({drive.name},openbsd1){kernel.kernel_path}"
            )
    else:
        raise TypeError(f"Unknown kernel instructions: {kernel!r}")
    lines.append("boot")
    return "\n".join(lines) + "\n"


def compile_grub_bhyve(
    config: ClientConfiguration,
    machine: VirtualMachine,
    device_map: Path,
    console: Optional[Path] = None,
) -> ProcessDescription:
    arguments: List[str] = []
    if console is not None:
        arguments.append(f"--cons-dev={console}")
    arguments += [
        f"--device-map={device_map}",
        "--root=host",
        f"--directory={config.machine_runtime_directory(machine.id)}",
        f"--memory={machine.memory.total_megabytes}M",
        machine.short_id,
    ]
    return ProcessDescription(config.executable("grub_bhyve"), tuple(arguments))


def grub_files(config: ClientConfiguration, machine: VirtualMachine, boot: GRUBBhyveBoot):
    """Return (device map path, config path, drives) for a GRUB boot."""
    directory = config.machine_runtime_directory(machine.id)
    drives = grub_device_map(config, machine, boot)
    return directory / GRUB_DEVICE_MAP_NAME, directory / GRUB_CONFIG_NAME, drives

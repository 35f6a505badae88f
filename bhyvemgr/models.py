"""Data models for bhyve-vm-manager.

Every value here is immutable. Devices, storage backends, network backends,
TTY backends, kernel instructions and boot configurations are closed sets of
variants; code that dispatches on them ends with an explicit failure for an
unknown variant.
"""

from __future__ import annotations

import base64
import dataclasses
import ipaddress
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Dict, FrozenSet, NamedTuple, Optional, Tuple, Union

from bhyvemgr.constants import (
    BOOT_CONFIGURATION_NAME_RE,
    BUS_MAX,
    DEVICE_SLOT_RE,
    FUNCTION_MAX,
    INTERFACE_GROUP_RE,
    MAC_ADDRESS_RE,
    MACHINE_NAME_RE,
    SLOT_MAX,
    STORAGE_OPEN_OPTIONS,
    TAP_DEVICE_NAME_RE,
    TTY_DEVICE_NAMES,
    VGA_MODES,
    VMNET_DEVICE_NAME_RE,
    ZFS_VOLUME_SIZE_MULTIPLE,
)
from bhyvemgr.exceptions import ValidationError


def _set(obj, name, value) -> None:
    object.__setattr__(obj, name, value)


@dataclass(frozen=True, order=True)
class DeviceSlot:
    bus: int
    slot: int
    function: int

    def __post_init__(self):
        for name, value, upper in (
            ("bus", self.bus, BUS_MAX),
            ("slot", self.slot, SLOT_MAX),
            ("function", self.function, FUNCTION_MAX),
        ):
            if not 0 <= value <= upper:
                raise ValidationError(f"Device slot {name} must be in 0..{upper} (got {value})")

    @classmethod
    def parse(cls, text: str) -> "DeviceSlot":
        match = DEVICE_SLOT_RE.match(text.strip())
        if not match:
            raise ValidationError(f"Malformed device slot '{text}'. Expected <bus>:<slot>:<function>")
        bus, slot, function = (int(group) for group in match.groups())
        return cls(bus, slot, function)

    @property
    def device_id(self) -> int:
        """Integer identifier of the slot, unique within one machine."""
        return (self.bus << 8) | (self.slot << 3) | self.function

    def __str__(self) -> str:
        return f"{self.bus}:{self.slot}:{self.function}"


class CPUPin(NamedTuple):
    host_cpu: int
    guest_cpu: int


@dataclass(frozen=True)
class CPUTopology:
    sockets: int = 1
    cores: int = 1
    threads: int = 1
    cpus: Optional[int] = None
    pinned: Tuple[CPUPin, ...] = ()

    def __post_init__(self):
        for name in ("sockets", "cores", "threads"):
            if getattr(self, name) < 1:
                raise ValidationError(f"CPU {name} must be >= 1 (got {getattr(self, name)})")
        expected = self.sockets * self.cores * self.threads
        if self.cpus is None:
            _set(self, "cpus", expected)
        elif self.cpus != expected:
            raise ValidationError(
                f"CPU count {self.cpus} does not match sockets*cores*threads "
                f"({self.sockets}*{self.cores}*{self.threads} = {expected})"
            )
        pins = tuple(sorted(CPUPin(*pin) for pin in self.pinned))
        for pin in pins:
            if pin.host_cpu < 0 or not 0 <= pin.guest_cpu < expected:
                raise ValidationError(f"Invalid CPU pin {pin.host_cpu}:{pin.guest_cpu}")
        _set(self, "pinned", pins)


@dataclass(frozen=True)
class Memory:
    gigabytes: int = 0
    megabytes: int = 0

    def __post_init__(self):
        if self.gigabytes < 0 or self.megabytes < 0:
            raise ValidationError("Memory sizes must be non-negative")

    @property
    def total_megabytes(self) -> int:
        return self.gigabytes * 1024 + self.megabytes


@dataclass(frozen=True)
class Flags:
    yield_cpu_on_halt: bool = True
    generate_acpi_tables: bool = True
    exit_on_pause: bool = True
    ignore_unimplemented_msr: bool = True
    wire_guest_memory: bool = False
    realtime_clock_is_utc: bool = False
    guest_apic_is_x2apic: bool = False
    disable_mptable_generation: bool = False
    force_virtio_pci_msi: bool = False
    include_guest_memory_in_cores: bool = False

    @classmethod
    def names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in dataclasses.fields(cls))

    def with_overrides(self, overrides: Dict[str, bool]) -> "Flags":
        """Return a copy with the given flags changed and the rest kept."""
        unknown = sorted(set(overrides) - set(self.names()))
        if unknown:
            raise ValidationError(f"Unknown flag(s): {', '.join(unknown)}. Supported: {', '.join(self.names())}")
        return dataclasses.replace(self, **overrides)


# Storage backends


@dataclass(frozen=True)
class FileStorage:
    path: Path
    open_options: FrozenSet[str] = frozenset()
    logical_sector_size: Optional[int] = None
    physical_sector_size: Optional[int] = None

    def __post_init__(self):
        _set(self, "path", Path(self.path))
        if not self.path.is_absolute():
            raise ValidationError(f"Storage file path must be absolute: {self.path}")
        _set(self, "open_options", frozenset(self.open_options))
        unknown = sorted(self.open_options - set(STORAGE_OPEN_OPTIONS))
        if unknown:
            raise ValidationError(
                f"Unknown open option(s): {', '.join(unknown)}. Supported: {', '.join(STORAGE_OPEN_OPTIONS)}"
            )
        if self.physical_sector_size is not None and self.logical_sector_size is None:
            raise ValidationError("A physical sector size requires a logical sector size")
        for size in (self.logical_sector_size, self.physical_sector_size):
            if size is not None and size <= 0:
                raise ValidationError(f"Sector sizes must be positive (got {size})")


@dataclass(frozen=True)
class ZFSVolumeStorage:
    expected_size: Optional[int] = None

    def __post_init__(self):
        size = self.expected_size
        if size is not None and (size <= 0 or size % ZFS_VOLUME_SIZE_MULTIPLE != 0):
            raise ValidationError(
                f"ZFS volume size must be a positive multiple of {ZFS_VOLUME_SIZE_MULTIPLE} (got {size})"
            )


@dataclass(frozen=True)
class SCSIStorage:
    path: str


StorageBackend = Union[FileStorage, ZFSVolumeStorage, SCSIStorage]


# Network backends


def normalize_mac(raw: str) -> str:
    mac = raw.strip().lower()
    if not MAC_ADDRESS_RE.match(mac):
        raise ValidationError(f"Invalid MAC address '{raw}'")
    return mac


@dataclass(frozen=True)
class _NetworkBackend:
    name: str
    host_mac: str
    guest_mac: str
    groups: Tuple[str, ...] = ()

    NAME_RE: ClassVar = None
    KIND: ClassVar[str] = ""

    def __post_init__(self):
        if not self.NAME_RE.match(self.name):
            raise ValidationError(f"Invalid {self.KIND} device name '{self.name}'")
        _set(self, "host_mac", normalize_mac(self.host_mac))
        _set(self, "guest_mac", normalize_mac(self.guest_mac))
        _set(self, "groups", tuple(self.groups))
        for group in self.groups:
            if not INTERFACE_GROUP_RE.match(group):
                raise ValidationError(f"Invalid interface group name '{group}'")


@dataclass(frozen=True)
class TapBackend(_NetworkBackend):
    NAME_RE: ClassVar = TAP_DEVICE_NAME_RE
    KIND: ClassVar[str] = "tap"


@dataclass(frozen=True)
class VMNetBackend(_NetworkBackend):
    NAME_RE: ClassVar = VMNET_DEVICE_NAME_RE
    KIND: ClassVar[str] = "vmnet"


NetworkBackend = Union[TapBackend, VMNetBackend]


# TTY backends


def _check_tty_device(device: str) -> None:
    if device not in TTY_DEVICE_NAMES:
        raise ValidationError(f"Unknown TTY device '{device}'. Supported: {', '.join(TTY_DEVICE_NAMES)}")


@dataclass(frozen=True)
class FileTTY:
    device: str
    path: Path

    def __post_init__(self):
        _check_tty_device(self.device)
        _set(self, "path", Path(self.path))
        if not self.path.is_absolute():
            raise ValidationError(f"TTY file path must be absolute: {self.path}")


@dataclass(frozen=True)
class NMDMTTY:
    device: str

    def __post_init__(self):
        _check_tty_device(self.device)


@dataclass(frozen=True)
class StdioTTY:
    device: str

    def __post_init__(self):
        _check_tty_device(self.device)


TTYBackend = Union[FileTTY, NMDMTTY, StdioTTY]


# Devices


@dataclass(frozen=True)
class HostBridge:
    slot: DeviceSlot
    vendor: str = "unspecified"
    comment: str = ""

    KIND: ClassVar[str] = "hostbridge"

    def __post_init__(self):
        if self.vendor not in ("unspecified", "amd"):
            raise ValidationError(f"Unknown host bridge vendor '{self.vendor}'")

    @property
    def external_name(self) -> str:
        return "amd_hostbridge" if self.vendor == "amd" else "hostbridge"


@dataclass(frozen=True)
class VirtioNetwork:
    slot: DeviceSlot
    backend: NetworkBackend
    comment: str = ""

    KIND: ClassVar[str] = "virtio-net"
    external_name: ClassVar[str] = "virtio-net"


@dataclass(frozen=True)
class E1000Network:
    slot: DeviceSlot
    backend: NetworkBackend
    comment: str = ""

    KIND: ClassVar[str] = "e1000"
    external_name: ClassVar[str] = "e1000"


@dataclass(frozen=True)
class VirtioBlock:
    slot: DeviceSlot
    backend: StorageBackend
    comment: str = ""

    KIND: ClassVar[str] = "virtio-blk"
    external_name: ClassVar[str] = "virtio-blk"


@dataclass(frozen=True)
class AHCIDisk:
    slot: DeviceSlot
    backend: StorageBackend
    comment: str = ""

    KIND: ClassVar[str] = "ahci-hd"
    external_name: ClassVar[str] = "ahci-hd"


@dataclass(frozen=True)
class AHCIOpticalDisk:
    slot: DeviceSlot
    backend: StorageBackend
    comment: str = ""

    KIND: ClassVar[str] = "ahci-cd"
    external_name: ClassVar[str] = "ahci-cd"


@dataclass(frozen=True)
class LPC:
    slot: DeviceSlot
    backends: Tuple[TTYBackend, ...]
    comment: str = ""

    KIND: ClassVar[str] = "lpc"
    external_name: ClassVar[str] = "lpc"

    def __post_init__(self):
        backends = tuple(sorted(self.backends, key=lambda backend: TTY_DEVICE_NAMES.index(backend.device)))
        if not backends:
            raise ValidationError("An LPC device requires at least one TTY backend")
        names = [backend.device for backend in backends]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate LPC TTY device(s): {', '.join(duplicates)}")
        _set(self, "backends", backends)

    def backend_for(self, device: str) -> Optional[TTYBackend]:
        for backend in self.backends:
            if backend.device == device:
                return backend
        return None


@dataclass(frozen=True)
class Passthru:
    slot: DeviceSlot
    host_slot: DeviceSlot
    comment: str = ""

    KIND: ClassVar[str] = "passthru"
    external_name: ClassVar[str] = "passthru"


@dataclass(frozen=True)
class Framebuffer:
    slot: DeviceSlot
    width: int = 1024
    height: int = 768
    listen_address: str = "127.0.0.1"
    listen_port: int = 5900
    vga_mode: str = "io"
    wait_for_vnc: bool = False
    comment: str = ""

    KIND: ClassVar[str] = "fbuf"
    external_name: ClassVar[str] = "fbuf"

    def __post_init__(self):
        if not 640 <= self.width <= 1920:
            raise ValidationError(f"Framebuffer width must be in 640..1920 (got {self.width})")
        if not 480 <= self.height <= 1200:
            raise ValidationError(f"Framebuffer height must be in 480..1200 (got {self.height})")
        if not 0 <= self.listen_port <= 65535:
            raise ValidationError(f"Framebuffer port must be in 0..65535 (got {self.listen_port})")
        if self.vga_mode not in VGA_MODES:
            raise ValidationError(f"Unknown VGA mode '{self.vga_mode}'. Supported: {', '.join(VGA_MODES)}")
        try:
            ipaddress.ip_address(self.listen_address)
        except ValueError:
            raise ValidationError(f"Invalid framebuffer listen address '{self.listen_address}'")


@dataclass(frozen=True)
class XHCIUSBTablet:
    slot: DeviceSlot
    comment: str = ""

    KIND: ClassVar[str] = "xhci"
    external_name: ClassVar[str] = "xhci"


Device = Union[
    HostBridge,
    VirtioNetwork,
    E1000Network,
    VirtioBlock,
    AHCIDisk,
    AHCIOpticalDisk,
    LPC,
    Passthru,
    Framebuffer,
    XHCIUSBTablet,
]

DEVICE_TYPES = (
    HostBridge,
    VirtioNetwork,
    E1000Network,
    VirtioBlock,
    AHCIDisk,
    AHCIOpticalDisk,
    LPC,
    Passthru,
    Framebuffer,
    XHCIUSBTablet,
)
STORAGE_DEVICE_TYPES = (VirtioBlock, AHCIDisk, AHCIOpticalDisk)
NETWORK_DEVICE_TYPES = (VirtioNetwork, E1000Network)


def with_slot(device: Device, slot: DeviceSlot) -> Device:
    return dataclasses.replace(device, slot=slot)


# Boot configurations


@dataclass(frozen=True)
class DiskAttachment:
    slot: DeviceSlot
    comment: str = ""


@dataclass(frozen=True)
class OpenBSDKernel:
    kernel_path: str
    boot_device: DeviceSlot


@dataclass(frozen=True)
class LinuxKernel:
    kernel_path: str
    kernel_device: DeviceSlot
    initrd_path: str
    initrd_device: DeviceSlot
    arguments: Tuple[str, ...] = ()

    def __post_init__(self):
        _set(self, "arguments", tuple(self.arguments))


KernelInstructions = Union[OpenBSDKernel, LinuxKernel]


def _check_boot_name(name: str) -> None:
    if not BOOT_CONFIGURATION_NAME_RE.match(name):
        raise ValidationError(f"Invalid boot configuration name '{name}'")


@dataclass(frozen=True)
class GRUBBhyveBoot:
    name: str
    kernel: KernelInstructions
    disks: Tuple[DiskAttachment, ...] = ()
    comment: str = ""

    def __post_init__(self):
        _check_boot_name(self.name)
        _set(self, "disks", tuple(self.disks))


@dataclass(frozen=True)
class UEFIBoot:
    name: str
    firmware: Path
    disks: Tuple[DiskAttachment, ...] = ()
    comment: str = ""

    def __post_init__(self):
        _check_boot_name(self.name)
        _set(self, "firmware", Path(self.firmware))
        if not self.firmware.is_absolute():
            raise ValidationError(f"Firmware path must be absolute: {self.firmware}")
        _set(self, "disks", tuple(self.disks))


BootConfiguration = Union[GRUBBhyveBoot, UEFIBoot]


def boot_configuration_slots(config: BootConfiguration) -> FrozenSet[DeviceSlot]:
    """Return every device slot a boot configuration refers to."""
    slots = {disk.slot for disk in config.disks}
    if isinstance(config, GRUBBhyveBoot):
        kernel = config.kernel
        if isinstance(kernel, OpenBSDKernel):
            slots.add(kernel.boot_device)
        elif isinstance(kernel, LinuxKernel):
            slots.update((kernel.kernel_device, kernel.initrd_device))
        else:
            raise TypeError(f"Unknown kernel instructions: {kernel!r}")
    elif not isinstance(config, UEFIBoot):
        raise TypeError(f"Unknown boot configuration: {config!r}")
    return frozenset(slots)


# Machines


@dataclass(frozen=True)
class VirtualMachine:
    id: uuid.UUID
    name: str
    cpu_topology: CPUTopology = field(default_factory=CPUTopology)
    memory: Memory = field(default_factory=Memory)
    flags: Flags = field(default_factory=Flags)
    devices: Dict[DeviceSlot, Device] = field(default_factory=dict)
    boot_configurations: Dict[str, BootConfiguration] = field(default_factory=dict)
    comment: str = ""
    source: Optional[Path] = field(default=None, compare=False)

    def __post_init__(self):
        if not MACHINE_NAME_RE.match(self.name):
            raise ValidationError(f"Invalid machine name '{self.name}'")
        devices = dict(sorted(self.devices.items()))
        for slot, device in devices.items():
            if device.slot != slot:
                raise ValidationError(f"Device {device.KIND} is keyed by {slot} but sits at {device.slot}")
        _set(self, "devices", devices)
        _set(self, "boot_configurations", dict(sorted(self.boot_configurations.items())))

    @property
    def short_id(self) -> str:
        """Unpadded base64url form of the id, short enough for bhyve VM names."""
        return base64.urlsafe_b64encode(self.id.bytes).decode("ascii").rstrip("=")

    def replace(self, **changes) -> "VirtualMachine":
        """Derive a new machine from this one and the given changes."""
        return dataclasses.replace(self, **changes)

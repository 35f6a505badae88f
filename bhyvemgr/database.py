"""Machine records on disk for bhyve-vm-manager.

Each machine is stored as ``<uuid>.bvmx`` in the configuration directory. The
file holds a ``<machines>`` document with exactly one ``<machine>``; exports
use the same document shape with any number of machines.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, register_namespace, tostring

from bhyvemgr.constants import MACHINE_FILE_SUFFIX, XML_NAMESPACE
from bhyvemgr.exceptions import DuplicateError, ManagerError, NonexistentError, ValidationError, combine
from bhyvemgr.machines import check_machine
from bhyvemgr.models import (
    DEVICE_TYPES,
    LPC,
    NETWORK_DEVICE_TYPES,
    STORAGE_DEVICE_TYPES,
    CPUPin,
    CPUTopology,
    Device,
    DeviceSlot,
    DiskAttachment,
    FileStorage,
    FileTTY,
    Flags,
    Framebuffer,
    GRUBBhyveBoot,
    HostBridge,
    LinuxKernel,
    Memory,
    NMDMTTY,
    OpenBSDKernel,
    Passthru,
    SCSIStorage,
    StdioTTY,
    TapBackend,
    UEFIBoot,
    VirtualMachine,
    VMNetBackend,
    XHCIUSBTablet,
    ZFSVolumeStorage,
)
from bhyvemgr.utils import ensure_directory, log, parse_bool, write_file_atomically

register_namespace("", XML_NAMESPACE)

_DEVICE_CLASSES = {cls.KIND: cls for cls in DEVICE_TYPES}


def _q(tag: str) -> str:
    return f"{{{XML_NAMESPACE}}}{tag}"


def _local(tag: str) -> str:
    return tag.split("}", 1)[-1]


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML document."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ")


# Encoding


def _encode_storage(parent: Element, backend) -> None:
    if isinstance(backend, FileStorage):
        attrs = {"path": str(backend.path)}
        if backend.logical_sector_size is not None:
            attrs["logical-sector-size"] = str(backend.logical_sector_size)
        if backend.physical_sector_size is not None:
            attrs["physical-sector-size"] = str(backend.physical_sector_size)
        node = SubElement(parent, _q("file"), attrs)
        for option in sorted(backend.open_options):
            SubElement(node, _q("open-option"), value=option)
    elif isinstance(backend, ZFSVolumeStorage):
        attrs = {}
        if backend.expected_size is not None:
            attrs["expected-size"] = str(backend.expected_size)
        SubElement(parent, _q("zfs-volume"), attrs)
    elif isinstance(backend, SCSIStorage):
        SubElement(parent, _q("scsi"), path=backend.path)
    else:
        raise TypeError(f"Unknown storage backend: {backend!r}")


def _encode_network(parent: Element, backend) -> None:
    node = SubElement(
        parent,
        _q(backend.KIND),
        name=backend.name,
        **{"host-mac": backend.host_mac, "guest-mac": backend.guest_mac},
    )
    for group in backend.groups:
        SubElement(node, _q("group"), name=group)


def _encode_tty(parent: Element, backend) -> None:
    if isinstance(backend, FileTTY):
        SubElement(parent, _q("file"), device=backend.device, path=str(backend.path))
    elif isinstance(backend, NMDMTTY):
        SubElement(parent, _q("nmdm"), device=backend.device)
    elif isinstance(backend, StdioTTY):
        SubElement(parent, _q("stdio"), device=backend.device)
    else:
        raise TypeError(f"Unknown TTY backend: {backend!r}")


def _encode_device(parent: Element, device: Device) -> None:
    node = SubElement(parent, _q(device.KIND), slot=str(device.slot))
    if device.comment:
        node.set("comment", device.comment)
    if isinstance(device, HostBridge):
        node.set("vendor", device.vendor)
    elif isinstance(device, STORAGE_DEVICE_TYPES):
        _encode_storage(node, device.backend)
    elif isinstance(device, NETWORK_DEVICE_TYPES):
        _encode_network(node, device.backend)
    elif isinstance(device, LPC):
        for backend in device.backends:
            _encode_tty(node, backend)
    elif isinstance(device, Passthru):
        node.set("host-slot", str(device.host_slot))
    elif isinstance(device, Framebuffer):
        node.set("width", str(device.width))
        node.set("height", str(device.height))
        node.set("listen-address", device.listen_address)
        node.set("listen-port", str(device.listen_port))
        node.set("vga", device.vga_mode)
        node.set("wait-for-vnc", _bool(device.wait_for_vnc))
    elif not isinstance(device, XHCIUSBTablet):
        raise TypeError(f"Unknown device: {device!r}")


def encode_boot_configuration(parent: Element, config) -> None:
    if isinstance(config, GRUBBhyveBoot):
        node = SubElement(parent, _q("grub-bhyve"), name=config.name)
        kernel = config.kernel
        if isinstance(kernel, OpenBSDKernel):
            SubElement(
                node,
                _q("openbsd"),
                **{"kernel-path": kernel.kernel_path, "boot-device": str(kernel.boot_device)},
            )
        elif isinstance(kernel, LinuxKernel):
            linux = SubElement(
                node,
                _q("linux"),
                **{
                    "kernel-path": kernel.kernel_path,
                    "kernel-device": str(kernel.kernel_device),
                    "initrd-path": kernel.initrd_path,
                    "initrd-device": str(kernel.initrd_device),
                },
            )
            for argument in kernel.arguments:
                SubElement(linux, _q("argument"), value=argument)
        else:
            raise TypeError(f"Unknown kernel instructions: {kernel!r}")
    elif isinstance(config, UEFIBoot):
        node = SubElement(parent, _q("uefi"), name=config.name, firmware=str(config.firmware))
    else:
        raise TypeError(f"Unknown boot configuration: {config!r}")
    if config.comment:
        node.set("comment", config.comment)
    for disk in config.disks:
        disk_node = SubElement(node, _q("disk"), slot=str(disk.slot))
        if disk.comment:
            disk_node.set("comment", disk.comment)


def encode_machine(parent: Element, machine: VirtualMachine) -> Element:
    node = SubElement(parent, _q("machine"), id=str(machine.id), name=machine.name)
    if machine.comment:
        SubElement(node, _q("comment")).text = machine.comment

    cpu = machine.cpu_topology
    cpu_node = SubElement(
        node,
        _q("cpu"),
        sockets=str(cpu.sockets),
        cores=str(cpu.cores),
        threads=str(cpu.threads),
        cpus=str(cpu.cpus),
    )
    for pin in cpu.pinned:
        SubElement(cpu_node, _q("pin"), host=str(pin.host_cpu), guest=str(pin.guest_cpu))

    SubElement(
        node,
        _q("memory"),
        gigabytes=str(machine.memory.gigabytes),
        megabytes=str(machine.memory.megabytes),
    )
    SubElement(node, _q("flags"), {name: _bool(getattr(machine.flags, name)) for name in Flags.names()})

    devices = SubElement(node, _q("devices"))
    for device in machine.devices.values():
        _encode_device(devices, device)

    boots = SubElement(node, _q("boot-configurations"))
    for config in machine.boot_configurations.values():
        encode_boot_configuration(boots, config)
    return node


def encode_machines(machines: Iterable[VirtualMachine]) -> str:
    root = Element(_q("machines"))
    for machine in machines:
        encode_machine(root, machine)
    return _element_to_str(root)


# Decoding


def _attr(node: Element, name: str) -> str:
    value = node.get(name)
    if value is None:
        raise ValidationError(f"Element <{_local(node.tag)}> is missing attribute '{name}'")
    return value


def _int(node: Element, name: str) -> int:
    raw = _attr(node, name)
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"Attribute '{name}' of <{_local(node.tag)}> must be an integer (got '{raw}')")


def _opt_int(node: Element, name: str, default: Optional[int] = None) -> Optional[int]:
    if node.get(name) is None:
        return default
    return _int(node, name)


def _only_child(node: Element) -> Element:
    children = list(node)
    if len(children) != 1:
        raise ValidationError(f"Element <{_local(node.tag)}> must have exactly one child element")
    return children[0]


def _decode_storage(node: Element):
    kind = _local(node.tag)
    if kind == "file":
        return FileStorage(
            path=Path(_attr(node, "path")),
            open_options=frozenset(_attr(option, "value") for option in node.findall(_q("open-option"))),
            logical_sector_size=_opt_int(node, "logical-sector-size"),
            physical_sector_size=_opt_int(node, "physical-sector-size"),
        )
    if kind == "zfs-volume":
        return ZFSVolumeStorage(expected_size=_opt_int(node, "expected-size"))
    if kind == "scsi":
        return SCSIStorage(path=_attr(node, "path"))
    raise ValidationError(f"Unknown storage backend <{kind}>")


def _decode_network(node: Element):
    kinds = {"tap": TapBackend, "vmnet": VMNetBackend}
    kind = _local(node.tag)
    if kind not in kinds:
        raise ValidationError(f"Unknown network backend <{kind}>")
    return kinds[kind](
        name=_attr(node, "name"),
        host_mac=_attr(node, "host-mac"),
        guest_mac=_attr(node, "guest-mac"),
        groups=tuple(_attr(group, "name") for group in node.findall(_q("group"))),
    )


def _decode_tty(node: Element):
    kind = _local(node.tag)
    if kind == "file":
        return FileTTY(_attr(node, "device"), Path(_attr(node, "path")))
    if kind == "nmdm":
        return NMDMTTY(_attr(node, "device"))
    if kind == "stdio":
        return StdioTTY(_attr(node, "device"))
    raise ValidationError(f"Unknown TTY backend <{kind}>")


def _decode_device(node: Element) -> Device:
    kind = _local(node.tag)
    cls = _DEVICE_CLASSES.get(kind)
    if cls is None:
        raise ValidationError(f"Unknown device <{kind}>")
    slot = DeviceSlot.parse(_attr(node, "slot"))
    comment = node.get("comment", "")
    if cls is HostBridge:
        return HostBridge(slot, vendor=node.get("vendor", "unspecified"), comment=comment)
    if cls in STORAGE_DEVICE_TYPES:
        return cls(slot, _decode_storage(_only_child(node)), comment=comment)
    if cls in NETWORK_DEVICE_TYPES:
        return cls(slot, _decode_network(_only_child(node)), comment=comment)
    if cls is LPC:
        return LPC(slot, tuple(_decode_tty(child) for child in node), comment=comment)
    if cls is Passthru:
        return Passthru(slot, DeviceSlot.parse(_attr(node, "host-slot")), comment=comment)
    if cls is Framebuffer:
        return Framebuffer(
            slot,
            width=_opt_int(node, "width", 1024),
            height=_opt_int(node, "height", 768),
            listen_address=node.get("listen-address", "127.0.0.1"),
            listen_port=_opt_int(node, "listen-port", 5900),
            vga_mode=node.get("vga", "io"),
            wait_for_vnc=parse_bool(node.get("wait-for-vnc", "false"), "wait-for-vnc"),
            comment=comment,
        )
    return XHCIUSBTablet(slot, comment=comment)


def decode_boot_configuration(node: Element):
    kind = _local(node.tag)
    disks = tuple(
        DiskAttachment(DeviceSlot.parse(_attr(disk, "slot")), disk.get("comment", ""))
        for disk in node.findall(_q("disk"))
    )
    comment = node.get("comment", "")
    if kind == "grub-bhyve":
        openbsd = node.find(_q("openbsd"))
        linux = node.find(_q("linux"))
        if openbsd is not None:
            kernel = OpenBSDKernel(
                kernel_path=_attr(openbsd, "kernel-path"),
                boot_device=DeviceSlot.parse(_attr(openbsd, "boot-device")),
            )
        elif linux is not None:
            kernel = LinuxKernel(
                kernel_path=_attr(linux, "kernel-path"),
                kernel_device=DeviceSlot.parse(_attr(linux, "kernel-device")),
                initrd_path=_attr(linux, "initrd-path"),
                initrd_device=DeviceSlot.parse(_attr(linux, "initrd-device")),
                arguments=tuple(_attr(arg, "value") for arg in linux.findall(_q("argument"))),
            )
        else:
            raise ValidationError(f"GRUB boot configuration '{node.get('name')}' has no kernel instructions")
        return GRUBBhyveBoot(_attr(node, "name"), kernel, disks, comment)
    if kind == "uefi":
        return UEFIBoot(_attr(node, "name"), Path(_attr(node, "firmware")), disks, comment)
    raise ValidationError(f"Unknown boot configuration <{kind}>")


def decode_machine(node: Element, source: Optional[Path] = None) -> VirtualMachine:
    try:
        machine_id = uuid.UUID(_attr(node, "id"))
    except ValueError:
        raise ValidationError(f"Invalid machine id '{node.get('id')}'")

    cpu_node = node.find(_q("cpu"))
    if cpu_node is None:
        cpu = CPUTopology()
    else:
        cpu = CPUTopology(
            sockets=_opt_int(cpu_node, "sockets", 1),
            cores=_opt_int(cpu_node, "cores", 1),
            threads=_opt_int(cpu_node, "threads", 1),
            cpus=_opt_int(cpu_node, "cpus"),
            pinned=tuple(
                CPUPin(_int(pin, "host"), _int(pin, "guest")) for pin in cpu_node.findall(_q("pin"))
            ),
        )

    memory_node = node.find(_q("memory"))
    memory = Memory()
    if memory_node is not None:
        memory = Memory(_opt_int(memory_node, "gigabytes", 0), _opt_int(memory_node, "megabytes", 0))

    flags = Flags()
    flags_node = node.find(_q("flags"))
    if flags_node is not None:
        flags = flags.with_overrides(
            {name: parse_bool(value, f"flag {name}") for name, value in flags_node.attrib.items()}
        )

    devices: Dict[DeviceSlot, Device] = {}
    for child in node.findall(f"{_q('devices')}/*"):
        device = _decode_device(child)
        if device.slot in devices:
            raise DuplicateError(f"Machine {machine_id} has more than one device at {device.slot}")
        devices[device.slot] = device

    boots = {}
    for child in node.findall(f"{_q('boot-configurations')}/*"):
        config = decode_boot_configuration(child)
        if config.name in boots:
            raise DuplicateError(f"Machine {machine_id} has more than one boot configuration '{config.name}'")
        boots[config.name] = config

    comment_node = node.find(_q("comment"))
    machine = VirtualMachine(
        id=machine_id,
        name=_attr(node, "name"),
        comment=(comment_node.text or "") if comment_node is not None else "",
        cpu_topology=cpu,
        memory=memory,
        flags=flags,
        devices=devices,
        boot_configurations=boots,
        source=source,
    )
    return check_machine(machine)


def decode_machines(text: str, source: Optional[Path] = None) -> List[VirtualMachine]:
    try:
        root = fromstring(text)
    except ParseError as exc:
        where = f" in {source}" if source else ""
        raise ValidationError(f"Malformed machine document{where}: {exc}")
    if root.tag != _q("machines"):
        raise ValidationError(f"Expected a <machines> document in namespace {XML_NAMESPACE}, got {root.tag}")
    return [decode_machine(node, source) for node in root.findall(_q("machine"))]


class MachineDatabase:
    """One record per machine, written through a temporary file and renamed into place.

    There is no locking between processes; concurrent writers to the same
    machine are not coordinated.
    """

    def __init__(self, directory: Path):
        self.directory = directory

    def path_for(self, machine_id: uuid.UUID) -> Path:
        return self.directory / f"{machine_id}{MACHINE_FILE_SUFFIX}"

    def _read(self, path: Path) -> List[VirtualMachine]:
        try:
            text = path.read_text()
        except OSError as exc:
            raise ManagerError(f"Cannot read machine record {path}: {exc}")
        return decode_machines(text, source=path)

    def get(self, machine_id: uuid.UUID) -> Optional[VirtualMachine]:
        path = self.path_for(machine_id)
        if not path.exists():
            return None
        for machine in self._read(path):
            if machine.id == machine_id:
                return machine
        return None

    def find(self, machine_id: uuid.UUID) -> VirtualMachine:
        machine = self.get(machine_id)
        if machine is None:
            raise NonexistentError(f"No virtual machine exists with ID {machine_id}")
        return machine

    def _write(self, machine: VirtualMachine) -> VirtualMachine:
        check_machine(machine)
        ensure_directory(self.directory)
        path = self.path_for(machine.id)
        write_file_atomically(path, encode_machines([machine]))
        log("DEBUG", f"Wrote {path}")
        return machine.replace(source=path)

    def define(self, machine: VirtualMachine) -> VirtualMachine:
        if self.path_for(machine.id).exists():
            raise DuplicateError(f"A virtual machine already exists with ID {machine.id}")
        return self._write(machine)

    def update(self, machine: VirtualMachine) -> VirtualMachine:
        return self._write(machine)

    def modify(
        self, machine_id: uuid.UUID, change: Callable[[VirtualMachine], VirtualMachine]
    ) -> VirtualMachine:
        """Read a machine, derive a new value from it, and write that value back."""
        return self.update(change(self.find(machine_id)))

    def delete(self, machine_id: uuid.UUID) -> None:
        path = self.path_for(machine_id)
        if not path.exists():
            raise NonexistentError(f"No virtual machine exists with ID {machine_id}")
        path.unlink()

    def list(self) -> List[VirtualMachine]:
        """Every stored machine, in file-name order. Unreadable records are reported together."""
        machines: List[VirtualMachine] = []
        errors: List[ManagerError] = []
        if not self.directory.is_dir():
            return machines
        for path in sorted(self.directory.glob(f"*{MACHINE_FILE_SUFFIX}")):
            try:
                machines.extend(self._read(path))
            except ManagerError as exc:
                errors.append(exc)
        if errors:
            raise combine(errors)
        return machines

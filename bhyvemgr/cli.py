"""CLI entry points for bhyve-vm-manager."""

from __future__ import annotations

import argparse
import sys
import uuid
from pathlib import Path
from typing import Callable, List, Optional

from bhyvemgr.boot import (
    load_boot_configurations,
    merge_boot_configurations,
    remove_boot_configurations,
    select_boot_configuration,
)
from bhyvemgr.commands import (
    compile_console_process,
    compile_kill,
    compile_run_plan,
    execute_run_plan,
    kill_machine,
    nmdm_paths,
)
from bhyvemgr.config import ClientConfiguration, load_client_configuration
from bhyvemgr.constants import STORAGE_OPEN_OPTIONS, TTY_DEVICE_NAMES, VGA_MODES
from bhyvemgr.database import MachineDatabase, decode_machines, encode_machines
from bhyvemgr.exceptions import (
    DuplicateError,
    ManagerError,
    NoSingleConsoleError,
    NonexistentError,
    UnimplementedError,
    ValidationError,
    combine,
)
from bhyvemgr.machines import check_machine, new_machine
from bhyvemgr.models import (
    LPC,
    AHCIDisk,
    AHCIOpticalDisk,
    CPUTopology,
    Device,
    DeviceSlot,
    E1000Network,
    FileStorage,
    FileTTY,
    Framebuffer,
    Memory,
    NMDMTTY,
    Passthru,
    StdioTTY,
    TapBackend,
    VirtioBlock,
    VirtioNetwork,
    VirtualMachine,
    VMNetBackend,
    XHCIUSBTablet,
    ZFSVolumeStorage,
)
from bhyvemgr.processes import replace_current_process
from bhyvemgr.slots import add_device, delete_devices, free_slot
from bhyvemgr.storage import realize_machine
from bhyvemgr.utils import log, parse_bool


# Backend strings


def parse_storage_backend(
    text: str,
    open_options: Optional[List[str]] = None,
    logical_sector_size: Optional[int] = None,
    physical_sector_size: Optional[int] = None,
):
    """Parse 'file;<path>' or 'zfs-volume[;<size>]'."""
    kind, _, rest = text.partition(";")
    if kind == "file":
        if not rest:
            raise ValidationError(f"Storage backend '{text}' needs a path: file;<path>")
        return FileStorage(Path(rest), frozenset(open_options or ()), logical_sector_size, physical_sector_size)
    if kind == "zfs-volume":
        if open_options or logical_sector_size or physical_sector_size:
            raise ValidationError("Open options and sector sizes apply only to file storage backends")
        try:
            size = int(rest) if rest else None
        except ValueError:
            raise ValidationError(f"ZFS volume size must be an integer (got '{rest}')")
        return ZFSVolumeStorage(size)
    if kind == "scsi":
        raise UnimplementedError("SCSI storage backends are not implemented")
    raise ValidationError(f"Unknown storage backend '{text}'. Use file;<path> or zfs-volume[;<size>]")


def parse_tty_backend(text: str):
    """Parse 'stdio;<device>', 'nmdm;<device>' or 'file;<device>;<path>'."""
    parts = text.split(";")
    kind = parts[0]
    if kind in ("stdio", "nmdm") and len(parts) == 2:
        return (StdioTTY if kind == "stdio" else NMDMTTY)(parts[1])
    if kind == "file" and len(parts) == 3:
        return FileTTY(parts[1], Path(parts[2]))
    devices = "|".join(TTY_DEVICE_NAMES)
    raise ValidationError(
        f"Malformed TTY backend '{text}'. Use stdio;<{devices}>, nmdm;<{devices}> or file;<{devices}>;<path>"
    )


def parse_network_backend(text: str, groups: Optional[List[str]] = None):
    """Parse 'tap;<name>;<host MAC>;<guest MAC>' or the same with 'vmnet'."""
    parts = text.split(";")
    kinds = {"tap": TapBackend, "vmnet": VMNetBackend}
    if len(parts) != 4 or parts[0] not in kinds:
        raise ValidationError(
            f"Malformed network backend '{text}'. Use tap;<name>;<host MAC>;<guest MAC> or vmnet;..."
        )
    return kinds[parts[0]](parts[1], parts[2], parts[3], tuple(groups or ()))


# Command handlers


def _attach(args, db: MachineDatabase, build: Callable[[DeviceSlot], Device]) -> int:
    machine = db.find(args.machine)
    slot = DeviceSlot.parse(args.device_slot) if args.device_slot else free_slot(machine)
    device = build(slot)
    db.update(add_device(machine, device, slot, replace=args.replace))
    log("SUCCESS", f"Added {device.KIND} device at {slot} to {machine.id}")
    return 0


def cmd_define(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    machine = new_machine(
        args.name,
        machine_id=args.machine,
        cpu_count=args.cpu_count,
        memory_gigabytes=args.memory_gigabytes,
        memory_megabytes=args.memory_megabytes,
        comment=args.comment,
    )
    db.define(machine)
    log("SUCCESS", f"Defined virtual machine {machine.name} ({machine.id})")
    print(machine.id)
    return 0


def cmd_add_disk(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    backend = parse_storage_backend(
        args.backend, args.open_option, args.logical_sector_size, args.physical_sector_size
    )
    device_type = {
        "vm-add-virtio-disk": VirtioBlock,
        "vm-add-ahci-disk": AHCIDisk,
        "vm-add-ahci-optical-disk": AHCIOpticalDisk,
    }[args.command]
    return _attach(args, db, lambda slot: device_type(slot, backend, comment=args.comment))


def cmd_add_network(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    backend = parse_network_backend(args.backend, args.interface_group)
    device_type = E1000Network if args.command == "vm-add-e1000-network-device" else VirtioNetwork
    return _attach(args, db, lambda slot: device_type(slot, backend, comment=args.comment))


def cmd_add_lpc(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    backends = tuple(parse_tty_backend(text) for text in args.add_backend)
    return _attach(args, db, lambda slot: LPC(slot, backends, comment=args.comment))


def cmd_add_passthru(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    host_slot = DeviceSlot.parse(args.host_slot)
    return _attach(args, db, lambda slot: Passthru(slot, host_slot, comment=args.comment))


def cmd_add_framebuffer(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    return _attach(
        args,
        db,
        lambda slot: Framebuffer(
            slot,
            width=args.width,
            height=args.height,
            listen_address=args.listen_address,
            listen_port=args.listen_port,
            vga_mode=args.vga_configuration,
            wait_for_vnc=args.wait_for_vnc,
            comment=args.comment,
        ),
    )


def cmd_add_usb_tablet(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    return _attach(args, db, lambda slot: XHCIUSBTablet(slot, comment=args.comment))


def cmd_delete_devices(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    slots = [DeviceSlot.parse(text) for text in args.device_slot]
    db.modify(args.machine, lambda machine: delete_devices(machine, slots))
    for slot in slots:
        log("SUCCESS", f"Deleted device {slot}")
    return 0


def cmd_update_boot_configurations(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    configurations = load_boot_configurations(args.file)
    db.modify(
        args.machine,
        lambda machine: merge_boot_configurations(machine, configurations, allow_update=args.update),
    )
    return 0


def cmd_delete_boot_configurations(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    db.modify(args.machine, lambda machine: remove_boot_configurations(machine, args.name))
    for name in args.name:
        log("SUCCESS", f"Deleted boot configuration '{name}'")
    return 0


def _set_machine(args, machine: VirtualMachine) -> VirtualMachine:
    changes = {}
    if args.name is not None:
        changes["name"] = args.name
    if args.comment is not None:
        changes["comment"] = args.comment
    if args.cpu_count is not None:
        changes["cpu_topology"] = CPUTopology(
            sockets=1, cores=args.cpu_count, threads=1, pinned=machine.cpu_topology.pinned
        )
    if args.memory_gigabytes is not None or args.memory_megabytes is not None:
        changes["memory"] = Memory(
            gigabytes=machine.memory.gigabytes if args.memory_gigabytes is None else args.memory_gigabytes,
            megabytes=machine.memory.megabytes if args.memory_megabytes is None else args.memory_megabytes,
        )
    if args.flag:
        overrides = {}
        for item in args.flag:
            name, sep, value = item.partition("=")
            if not sep:
                raise ValidationError(f"Flags are given as <name>=<true|false> (got '{item}')")
            overrides[name.strip().replace("-", "_")] = parse_bool(value, f"flag {name}")
        changes["flags"] = machine.flags.with_overrides(overrides)
    return check_machine(machine.replace(**changes))


def cmd_set(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    db.modify(args.machine, lambda machine: _set_machine(args, machine))
    log("SUCCESS", f"Updated virtual machine {args.machine}")
    return 0


def cmd_list(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    machines = db.list()
    if not machines:
        log("WARN", "No virtual machines are defined")
        return 0
    for machine in machines:
        print(f"{machine.id}  {machine.name}  {machine.comment}".rstrip())
    return 0


def _machines_named(db: MachineDatabase, name: str) -> List[VirtualMachine]:
    return [machine for machine in db.list() if machine.name == name]


def cmd_list_with_name(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    for machine in _machines_named(db, args.name):
        print(f"{machine.id}  {machine.name}  {machine.comment}".rstrip())
    return 0


def cmd_id_of(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    machines = _machines_named(db, args.name)
    if not machines:
        raise NonexistentError(f"No virtual machine is named '{args.name}'")
    machine = machines[0]
    print(machine.short_id if args.short else machine.id)
    return 0


def cmd_show(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    print(encode_machines([db.find(args.machine)]), end="")
    return 0


def cmd_delete(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    db.delete(args.machine)
    log("SUCCESS", f"Deleted virtual machine {args.machine}")
    return 0


def cmd_export(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    machines = [db.find(machine_id) for machine_id in args.machine]
    text = encode_machines(machines)
    if args.output is None:
        print(text, end="")
    else:
        args.output.write_text(text)
        log("SUCCESS", f"Exported {len(machines)} machine(s) to {args.output}")
    return 0


def _join_ids(ids) -> str:
    return ", ".join(str(machine_id) for machine_id in ids)


def cmd_import(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    try:
        text = args.file.read_text()
    except OSError as exc:
        raise ManagerError(f"Cannot read {args.file}: {exc}")
    machines = decode_machines(text, source=args.file)
    ids = [machine.id for machine in machines]
    repeated = sorted({machine_id for machine_id in ids if ids.count(machine_id) > 1})
    existing = sorted({machine_id for machine_id in ids if db.get(machine_id) is not None})
    errors = []
    if repeated:
        errors.append(DuplicateError(f"{args.file} repeats machine ID(s): {_join_ids(repeated)}"))
    if existing:
        errors.append(DuplicateError(f"Virtual machine(s) already exist: {_join_ids(existing)}"))
    if errors:
        raise combine(errors, DuplicateError)
    for machine in machines:
        db.define(machine)
        log("SUCCESS", f"Imported virtual machine {machine.name} ({machine.id})")
    return 0


def cmd_realize(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    realize_machine(config, db.find(args.machine), dry_run=args.dry_run)
    if not args.dry_run:
        log("SUCCESS", f"Realized virtual machine {args.machine}")
    return 0


def cmd_run(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    machine = db.find(args.machine)
    boot = select_boot_configuration(machine, args.boot_configuration)
    plan = compile_run_plan(config, machine, boot)
    if args.dry_run:
        for line in plan.render():
            print(line)
        return 0
    log("INFO", f"Starting {machine.name} ({machine.id}) with boot configuration '{boot.name}'")
    execute_run_plan(plan)
    return 0


def cmd_console(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    machine = db.find(args.machine)
    process = compile_console_process(config, machine)
    if process is None:
        raise NoSingleConsoleError(
            f"Machine {machine.id} has no single console device with an nmdm or file com1 backend"
        )
    if args.dry_run:
        print(f"exec {process.render()}")
        return 0
    replace_current_process(process)
    return 0


def cmd_kill(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    machine = db.find(args.machine)
    if args.dry_run:
        print(compile_kill(config, machine).render())
        return 0
    kill_machine(config, machine)
    log("SUCCESS", f"Destroyed virtual machine {machine.id}")
    return 0


def cmd_nmdm_paths(args, config: ClientConfiguration, db: MachineDatabase) -> int:
    paths = nmdm_paths(db.find(args.machine).id)
    print(f"guest {paths.guest}")
    print(f"host {paths.host}")
    return 0


# Parser


def _machine_option(parser: argparse.ArgumentParser, multiple: bool = False) -> None:
    parser.add_argument(
        "--machine",
        type=uuid.UUID,
        required=True,
        action="append" if multiple else "store",
        help="The ID of the virtual machine",
    )


def _device_options(parser: argparse.ArgumentParser) -> None:
    _machine_option(parser)
    parser.add_argument("--device-slot", help="PCI slot as <bus>:<slot>:<function> (default: first free)")
    parser.add_argument("--replace", action="store_true", help="Replace any device already at the slot")
    parser.add_argument("--comment", default="", help="A comment describing the device")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bhyvemgr", description="bhyve virtual machine manager")
    parser.add_argument("--configuration", type=Path, help="Client configuration file")
    sub = parser.add_subparsers(dest="command", metavar="command")
    sub.required = True

    p = sub.add_parser("vm-define", help="Define a new virtual machine")
    p.add_argument("--machine", type=uuid.UUID, help="The ID of the new machine (default: random)")
    p.add_argument("--name", required=True)
    p.add_argument("--cpu-count", type=int, default=1)
    p.add_argument("--memory-gigabytes", type=int, default=0)
    p.add_argument("--memory-megabytes", type=int, default=250)
    p.add_argument("--comment", default="")
    p.set_defaults(func=cmd_define)

    for name, what in (
        ("vm-add-virtio-disk", "virtio block device"),
        ("vm-add-ahci-disk", "AHCI disk"),
        ("vm-add-ahci-optical-disk", "AHCI optical disk"),
    ):
        p = sub.add_parser(name, help=f"Add a {what}")
        _device_options(p)
        p.add_argument("--backend", required=True, help="file;<path> or zfs-volume[;<size>]")
        p.add_argument("--open-option", action="append", choices=sorted(STORAGE_OPEN_OPTIONS), default=[])
        p.add_argument("--logical-sector-size", type=int)
        p.add_argument("--physical-sector-size", type=int)
        p.set_defaults(func=cmd_add_disk)

    for name, what in (
        ("vm-add-virtio-network-device", "virtio network device"),
        ("vm-add-e1000-network-device", "e1000 network device"),
    ):
        p = sub.add_parser(name, help=f"Add a {what}")
        _device_options(p)
        p.add_argument("--backend", required=True, help="tap;<name>;<host MAC>;<guest MAC> or vmnet;...")
        p.add_argument("--interface-group", action="append", default=[])
        p.set_defaults(func=cmd_add_network)

    p = sub.add_parser("vm-add-lpc-device", help="Add an LPC device with serial ports")
    _device_options(p)
    p.add_argument("--add-backend", action="append", required=True, help="stdio;com1, nmdm;com1 or file;com1;<path>")
    p.set_defaults(func=cmd_add_lpc)

    p = sub.add_parser("vm-add-passthru-device", help="Pass a host PCI device through")
    _device_options(p)
    p.add_argument("--host-slot", required=True, help="Host PCI slot as <bus>:<slot>:<function>")
    p.set_defaults(func=cmd_add_passthru)

    p = sub.add_parser("vm-add-framebuffer-device", help="Add a VNC framebuffer")
    _device_options(p)
    p.add_argument("--width", type=int, default=1024)
    p.add_argument("--height", type=int, default=768)
    p.add_argument("--listen-address", default="127.0.0.1")
    p.add_argument("--listen-port", type=int, default=5900)
    p.add_argument("--vga-configuration", choices=VGA_MODES, default="io")
    p.add_argument("--wait-for-vnc", action="store_true")
    p.set_defaults(func=cmd_add_framebuffer)

    p = sub.add_parser("vm-add-usb-tablet-device", help="Add an XHCI USB tablet")
    _device_options(p)
    p.set_defaults(func=cmd_add_usb_tablet)

    p = sub.add_parser("vm-delete-devices", help="Delete devices")
    _machine_option(p)
    p.add_argument("--device-slot", action="append", required=True)
    p.set_defaults(func=cmd_delete_devices)

    p = sub.add_parser("vm-update-boot-configurations", help="Add or update boot configurations from a YAML file")
    _machine_option(p)
    p.add_argument("--file", type=Path, required=True)
    p.add_argument("--update", action="store_true", help="Replace existing configurations with the same name")
    p.set_defaults(func=cmd_update_boot_configurations)

    p = sub.add_parser("vm-delete-boot-configurations", help="Delete boot configurations")
    _machine_option(p)
    p.add_argument("--name", action="append", required=True)
    p.set_defaults(func=cmd_delete_boot_configurations)

    p = sub.add_parser("vm-set", help="Change machine settings")
    _machine_option(p)
    p.add_argument("--name")
    p.add_argument("--comment")
    p.add_argument("--cpu-count", type=int)
    p.add_argument("--memory-gigabytes", type=int)
    p.add_argument("--memory-megabytes", type=int)
    p.add_argument("--flag", action="append", default=[], help="<flag>=<true|false>, may be repeated")
    p.set_defaults(func=cmd_set)

    p = sub.add_parser("vm-list", help="List virtual machines")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("vm-list-with-name", help="List virtual machines with a given name")
    p.add_argument("--name", required=True)
    p.set_defaults(func=cmd_list_with_name)

    p = sub.add_parser("vm-id-of", help="Print the ID of the first machine with a given name")
    p.add_argument("--name", required=True)
    p.add_argument("--short", action="store_true", help="Print the short ID used as the bhyve VM name")
    p.set_defaults(func=cmd_id_of)

    p = sub.add_parser("vm-show", help="Print a machine's record")
    _machine_option(p)
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("vm-delete", help="Delete a virtual machine")
    _machine_option(p)
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("vm-export", help="Export virtual machines")
    _machine_option(p, multiple=True)
    p.add_argument("--output", type=Path)
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("vm-import", help="Import virtual machines")
    p.add_argument("--file", type=Path, required=True)
    p.set_defaults(func=cmd_import)

    for name, func, what in (
        ("vm-realize", cmd_realize, "Create the storage a machine needs"),
        ("vm-console", cmd_console, "Attach to a machine's serial console"),
        ("vm-kill", cmd_kill, "Destroy a running machine"),
    ):
        p = sub.add_parser(name, help=what)
        _machine_option(p)
        p.add_argument("--dry-run", action="store_true", help="Print what would be done")
        p.set_defaults(func=func)

    p = sub.add_parser("vm-run", help="Run a virtual machine")
    _machine_option(p)
    p.add_argument("--boot-configuration", help="Boot configuration name (default: the only one)")
    p.add_argument("--dry-run", action="store_true", help="Print the commands instead of running them")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("vm-nmdm-paths", help="Print the nmdm device paths of a machine")
    _machine_option(p)
    p.set_defaults(func=cmd_nmdm_paths)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_client_configuration(args.configuration)
        db = MachineDatabase(config.configuration_directory)
        return args.func(args, config, db)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1


def entry() -> None:
    sys.exit(main())

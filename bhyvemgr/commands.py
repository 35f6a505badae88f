"""Compilation of machines into bhyve, grub-bhyve, ifconfig, cu and bhyvectl invocations."""

from __future__ import annotations

import ipaddress
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from bhyvemgr.config import ClientConfiguration
from bhyvemgr.constants import FLAG_SWITCHES, STORAGE_OPEN_OPTIONS
from bhyvemgr.exceptions import ProcessFailureError, ValidationError
from bhyvemgr.grub import compile_grub_bhyve, grub_files, render_device_map, render_grub_config
from bhyvemgr.models import (
    LPC,
    NETWORK_DEVICE_TYPES,
    STORAGE_DEVICE_TYPES,
    BootConfiguration,
    Device,
    FileStorage,
    FileTTY,
    Framebuffer,
    GRUBBhyveBoot,
    HostBridge,
    NMDMTTY,
    Passthru,
    StdioTTY,
    TTYBackend,
    UEFIBoot,
    VirtualMachine,
    XHCIUSBTablet,
)
from bhyvemgr.processes import ProcessDescription, replace_current_process, spawn_and_wait
from bhyvemgr.storage import storage_device_path
from bhyvemgr.utils import ensure_directory, log, write_file_atomically


class NMDMPaths(NamedTuple):
    guest: Path
    host: Path


def nmdm_paths(machine_id: uuid.UUID) -> NMDMPaths:
    return NMDMPaths(
        guest=Path(f"/dev/nmdm_{machine_id}_A"),
        host=Path(f"/dev/nmdm_{machine_id}_B"),
    )


# Device arguments


def _storage_suffix(config: ClientConfiguration, machine: VirtualMachine, device) -> List[str]:
    parts = [str(storage_device_path(config, machine, device))]
    backend = device.backend
    if isinstance(backend, FileStorage):
        parts += [rendered for option, rendered in STORAGE_OPEN_OPTIONS.items() if option in backend.open_options]
        if backend.logical_sector_size is not None:
            physical = backend.physical_sector_size or backend.logical_sector_size
            parts.append(f"sectorsize={backend.logical_sector_size}/{physical}")
    return parts


def _framebuffer_suffix(device: Framebuffer) -> List[str]:
    address = device.listen_address
    if isinstance(ipaddress.ip_address(address), ipaddress.IPv6Address):
        address = f"[{address}]"
    parts = [
        f"tcp={address}:{device.listen_port}",
        f"w={device.width}",
        f"h={device.height}",
        f"vga={device.vga_mode}",
    ]
    if device.wait_for_vnc:
        parts.append("wait")
    return parts


def device_suffix(config: ClientConfiguration, machine: VirtualMachine, device: Device) -> List[str]:
    """Comma-separated parts after '<slot>,<name>' in a device's -s argument."""
    if isinstance(device, STORAGE_DEVICE_TYPES):
        return _storage_suffix(config, machine, device)
    if isinstance(device, NETWORK_DEVICE_TYPES):
        return [device.backend.name, f"mac={device.backend.guest_mac}"]
    if isinstance(device, Passthru):
        host = device.host_slot
        return [f"{host.bus}/{host.slot}/{host.function}"]
    if isinstance(device, Framebuffer):
        return _framebuffer_suffix(device)
    if isinstance(device, XHCIUSBTablet):
        return ["tablet"]
    if isinstance(device, (HostBridge, LPC)):
        return []
    raise TypeError(f"Unknown device: {device!r}")


def tty_argument(machine: VirtualMachine, backend: TTYBackend) -> str:
    if isinstance(backend, FileTTY):
        return f"{backend.device},{backend.path}"
    if isinstance(backend, NMDMTTY):
        return f"{backend.device},{nmdm_paths(machine.id).guest}"
    if isinstance(backend, StdioTTY):
        return f"{backend.device},stdio"
    raise TypeError(f"Unknown TTY backend: {backend!r}")


def compile_run_arguments(
    config: ClientConfiguration, machine: VirtualMachine, boot: BootConfiguration
) -> ProcessDescription:
    """Build the bhyve invocation for a machine booted with the given configuration."""
    arguments: List[str] = ["-U", str(machine.id)]
    for flag, switch in FLAG_SWITCHES:
        if getattr(machine.flags, flag):
            arguments.append(switch)

    cpu = machine.cpu_topology
    arguments += ["-c", f"cpus={cpu.cpus},sockets={cpu.sockets},cores={cpu.cores},threads={cpu.threads}"]
    for pin in cpu.pinned:
        arguments += ["-p", f"{pin.guest_cpu}:{pin.host_cpu}"]
    arguments += ["-m", f"{machine.memory.total_megabytes}M"]

    lpc_arguments: List[str] = []
    for slot, device in machine.devices.items():
        parts = [str(slot), device.external_name, *device_suffix(config, machine, device)]
        arguments += ["-s", ",".join(parts)]
        if isinstance(device, LPC):
            for backend in device.backends:
                lpc_arguments += ["-l", tty_argument(machine, backend)]
    arguments += lpc_arguments

    if isinstance(boot, UEFIBoot):
        if any(arg.startswith("bootrom,") for arg in lpc_arguments):
            raise ValidationError(f"UEFI boot configuration '{boot.name}' conflicts with an LPC bootrom backend")
        arguments += ["-l", f"bootrom,{boot.firmware}"]
    elif not isinstance(boot, GRUBBhyveBoot):
        raise TypeError(f"Unknown boot configuration: {boot!r}")

    arguments.append(machine.short_id)
    return ProcessDescription(config.executable("bhyve"), tuple(arguments))


class PlanStep(NamedTuple):
    process: ProcessDescription
    ignore_failure: bool = False


def network_commands(config: ClientConfiguration, machine: VirtualMachine) -> List[PlanStep]:
    """ifconfig steps that create and configure each network device's host interface."""
    ifconfig = config.executable("ifconfig")
    steps: List[PlanStep] = []
    for device in machine.devices.values():
        if not isinstance(device, NETWORK_DEVICE_TYPES):
            continue
        backend = device.backend
        steps.append(PlanStep(ProcessDescription(ifconfig, (backend.name, "create")), ignore_failure=True))
        steps.append(PlanStep(ProcessDescription(ifconfig, (backend.name, "ether", backend.host_mac))))
        for group in backend.groups:
            steps.append(PlanStep(ProcessDescription(ifconfig, (backend.name, "group", group))))
    return steps


def com1_console_path(machine: VirtualMachine) -> Optional[Path]:
    """Guest-side path of com1 when it is backed by a file or an nmdm device."""
    for device in machine.devices.values():
        if not isinstance(device, LPC):
            continue
        backend = device.backend_for("com1")
        if isinstance(backend, FileTTY):
            return backend.path
        if isinstance(backend, NMDMTTY):
            return nmdm_paths(machine.id).guest
    return None


@dataclass
class RunPlan:
    """Everything needed to start a machine: files, checks, preparation steps and the final exec."""

    final: ProcessDescription
    preparation: List[PlanStep] = field(default_factory=list)
    files: Dict[Path, str] = field(default_factory=dict)
    required_paths: List[Path] = field(default_factory=list)

    def render(self) -> List[str]:
        lines = [step.process.render() for step in self.preparation]
        lines.append(f"exec {self.final.render()}")
        return lines


def compile_run_plan(
    config: ClientConfiguration, machine: VirtualMachine, boot: BootConfiguration
) -> RunPlan:
    plan = RunPlan(final=compile_run_arguments(config, machine, boot))
    plan.preparation += network_commands(config, machine)

    for device in machine.devices.values():
        if isinstance(device, STORAGE_DEVICE_TYPES):
            plan.required_paths.append(storage_device_path(config, machine, device))

    if isinstance(boot, GRUBBhyveBoot):
        map_path, config_path, drives = grub_files(config, machine, boot)
        plan.files[map_path] = render_device_map(drives)
        plan.files[config_path] = render_grub_config(boot, drives)
        grub = compile_grub_bhyve(config, machine, map_path, com1_console_path(machine))
        plan.preparation.append(PlanStep(grub))
        plan.required_paths.append(config.executable("grub_bhyve"))
    elif isinstance(boot, UEFIBoot):
        plan.required_paths.append(boot.firmware)
    else:
        raise TypeError(f"Unknown boot configuration: {boot!r}")
    plan.required_paths.append(config.executable("bhyve"))
    return plan


def execute_run_plan(plan: RunPlan) -> None:
    """Write plan files, check required paths, run preparation steps, then exec the final process."""
    for path, text in plan.files.items():
        ensure_directory(path.parent)
        write_file_atomically(path, text)
        log("DEBUG", f"Wrote {path}")

    missing = [path for path in plan.required_paths if not path.exists()]
    if missing:
        raise ProcessFailureError(f"Required path(s) missing: {', '.join(str(path) for path in missing)}")

    for step in plan.preparation:
        status = spawn_and_wait(step.process)
        if status == 0:
            continue
        if not step.ignore_failure:
            raise ProcessFailureError(f"{step.process.render()} exited with status {status}")
        log("WARN", f"{step.process.render()} exited with status {status}; continuing")
    replace_current_process(plan.final)


# Console and kill


def find_console_device(machine: VirtualMachine) -> Optional[LPC]:
    """Return the single LPC device with a com1 backend, or None if there are zero or several."""
    candidates = [
        device
        for device in machine.devices.values()
        if isinstance(device, LPC) and device.backend_for("com1") is not None
    ]
    if len(candidates) == 1:
        return candidates[0]
    return None


def compile_console_process(
    config: ClientConfiguration, machine: VirtualMachine
) -> Optional[ProcessDescription]:
    device = find_console_device(machine)
    if device is None:
        return None
    backend = device.backend_for("com1")
    if isinstance(backend, NMDMTTY):
        path = nmdm_paths(machine.id).host
    elif isinstance(backend, FileTTY):
        path = backend.path
    elif isinstance(backend, StdioTTY):
        return None
    else:
        raise TypeError(f"Unknown TTY backend: {backend!r}")
    return ProcessDescription(config.executable("cu"), ("-l", str(path)))


def compile_kill(config: ClientConfiguration, machine: VirtualMachine) -> ProcessDescription:
    return ProcessDescription(config.executable("bhyvectl"), (f"--vm={machine.short_id}", "--destroy"))


def kill_machine(config: ClientConfiguration, machine: VirtualMachine) -> int:
    status = spawn_and_wait(compile_kill(config, machine))
    if status != 0:
        raise ProcessFailureError(f"bhyvectl exited with status {status} while destroying {machine.id}")
    return status

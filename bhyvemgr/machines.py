"""Machine construction and machine-wide validation for bhyve-vm-manager."""

from __future__ import annotations

import uuid
from typing import Dict, List, Optional

from bhyvemgr.exceptions import ValidationError
from bhyvemgr.models import (
    LPC,
    NETWORK_DEVICE_TYPES,
    STORAGE_DEVICE_TYPES,
    CPUTopology,
    DeviceSlot,
    Flags,
    HostBridge,
    Memory,
    Passthru,
    UEFIBoot,
    VirtualMachine,
    boot_configuration_slots,
)

HOST_BRIDGE_SLOT = DeviceSlot(0, 0, 0)


def new_machine(
    name: str,
    machine_id: Optional[uuid.UUID] = None,
    cpu_count: int = 1,
    memory_gigabytes: int = 0,
    memory_megabytes: int = 250,
    comment: str = "",
) -> VirtualMachine:
    """Build a fresh machine with a host bridge at 0:0:0."""
    machine = VirtualMachine(
        id=machine_id or uuid.uuid4(),
        name=name,
        comment=comment,
        cpu_topology=CPUTopology(sockets=1, cores=cpu_count, threads=1),
        memory=Memory(gigabytes=memory_gigabytes, megabytes=memory_megabytes),
        flags=Flags(),
        devices={HOST_BRIDGE_SLOT: HostBridge(HOST_BRIDGE_SLOT)},
    )
    check_machine(machine)
    return machine


def machine_problems(machine: VirtualMachine) -> List[str]:
    problems: List[str] = []
    devices = list(machine.devices.values())

    lpcs = [device for device in devices if isinstance(device, LPC)]
    if len(lpcs) > 1:
        problems.append(f"At most one LPC device is allowed (found at {', '.join(str(d.slot) for d in lpcs)})")
    for lpc in lpcs:
        if lpc.slot.bus != 0:
            problems.append(f"LPC devices must be on bus 0 (found at {lpc.slot})")

    bridges = [device for device in devices if isinstance(device, HostBridge)]
    if len(bridges) > 1:
        problems.append(f"At most one host bridge is allowed (found at {', '.join(str(d.slot) for d in bridges)})")

    seen_macs: Dict[str, DeviceSlot] = {}
    for device in devices:
        if not isinstance(device, NETWORK_DEVICE_TYPES):
            continue
        for mac in (device.backend.host_mac, device.backend.guest_mac):
            if mac in seen_macs:
                problems.append(f"MAC address {mac} of device {device.slot} is already used by {seen_macs[mac]}")
            else:
                seen_macs[mac] = device.slot

    if not machine.flags.wire_guest_memory:
        for device in devices:
            if isinstance(device, Passthru):
                problems.append(f"Passthru device {device.slot} requires the wire_guest_memory flag")

    for config in machine.boot_configurations.values():
        if isinstance(config, UEFIBoot) and not lpcs:
            problems.append(f"UEFI boot configuration '{config.name}' requires an LPC device")
        problems.extend(boot_reference_problems(machine, config))
    return problems


def boot_reference_problems(machine: VirtualMachine, config) -> List[str]:
    problems: List[str] = []
    for slot in sorted(boot_configuration_slots(config)):
        device = machine.devices.get(slot)
        if device is None:
            problems.append(f"Boot configuration '{config.name}' refers to nonexistent device {slot}")
        elif not isinstance(device, STORAGE_DEVICE_TYPES):
            problems.append(
                f"Boot configuration '{config.name}' refers to device {slot} of kind {device.KIND}, "
                "which is not a storage device"
            )
    return problems


def check_machine(machine: VirtualMachine) -> VirtualMachine:
    """Raise ValidationError listing every machine-wide problem, else return the machine."""
    problems = machine_problems(machine)
    if problems:
        lines = "\n  ".join(problems)
        raise ValidationError(f"Machine {machine.id} is invalid:\n  {lines}")
    return machine

"""Device slot allocation for bhyve-vm-manager."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from bhyvemgr.constants import SLOT_MAX
from bhyvemgr.exceptions import (
    DeviceSlotsExhaustedError,
    DuplicateError,
    NonexistentError,
    ReferencedByBootConfigurationError,
    ValidationError,
    combine,
)
from bhyvemgr.machines import check_machine
from bhyvemgr.models import LPC, Device, DeviceSlot, VirtualMachine, boot_configuration_slots, with_slot
from bhyvemgr.utils import log


def free_slot(machine: VirtualMachine) -> DeviceSlot:
    """Return the lowest unused slot on bus 0, function 0, skipping slot 0."""
    for slot_id in range(1, SLOT_MAX + 1):
        candidate = DeviceSlot(0, slot_id, 0)
        if candidate not in machine.devices:
            return candidate
    raise DeviceSlotsExhaustedError(f"Machine {machine.id} has no free device slots on bus 0")


def add_device(
    machine: VirtualMachine,
    device: Device,
    slot: Optional[DeviceSlot] = None,
    replace: bool = False,
) -> VirtualMachine:
    """Return a machine with the device attached at slot, or at the first free slot."""
    if slot is None:
        slot = free_slot(machine)
    elif slot in machine.devices and not replace:
        existing = machine.devices[slot]
        raise DuplicateError(f"Device slot {slot} is already occupied by a {existing.KIND} device")
    if isinstance(device, LPC) and slot.bus != 0:
        raise ValidationError(f"LPC devices must be on bus 0 (got {slot})")

    device = with_slot(device, slot)
    devices = dict(machine.devices)
    if slot in devices:
        log("INFO", f"Replacing {devices[slot].KIND} device at {slot}")
    devices[slot] = device
    updated = check_machine(machine.replace(devices=devices))
    log("DEBUG", f"Attached {device.KIND} device at {slot}")
    return updated


def boot_configurations_using(machine: VirtualMachine, slot: DeviceSlot) -> List[str]:
    """Names of boot configurations that use the device at slot."""
    return [
        name
        for name, config in machine.boot_configurations.items()
        if slot in boot_configuration_slots(config)
    ]


def delete_devices(machine: VirtualMachine, slots: Iterable[DeviceSlot]) -> VirtualMachine:
    """Return a machine without the devices at slots. Nothing is removed if any slot fails."""
    slots = list(slots)
    missing = [slot for slot in slots if slot not in machine.devices]
    references: Dict[str, List[str]] = {}
    for slot in slots:
        if slot in machine.devices:
            names = boot_configurations_using(machine, slot)
            if names:
                references[str(slot)] = names

    if references:
        details = "; ".join(f"{slot} used by {', '.join(names)}" for slot, names in references.items())
        message = f"Devices are referenced by boot configurations: {details}"
        if missing:
            message += f"; no device exists at slot(s) {', '.join(str(slot) for slot in missing)}"
        raise ReferencedByBootConfigurationError(message, references)
    if missing:
        raise combine(
            [NonexistentError(f"No device exists at slot {slot}") for slot in missing],
            NonexistentError,
        )

    devices = {slot: device for slot, device in machine.devices.items() if slot not in slots}
    return machine.replace(devices=devices)

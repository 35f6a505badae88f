"""Tests for bhyvemgr.slots module."""

from __future__ import annotations

from pathlib import Path

import pytest

from bhyvemgr.exceptions import (
    DeviceSlotsExhaustedError,
    DuplicateError,
    NonexistentError,
    ReferencedByBootConfigurationError,
    ValidationError,
)
from bhyvemgr.models import (
    LPC,
    AHCIDisk,
    DeviceSlot,
    FileStorage,
    GRUBBhyveBoot,
    NMDMTTY,
    OpenBSDKernel,
    XHCIUSBTablet,
)
from bhyvemgr.slots import add_device, boot_configurations_using, delete_devices, free_slot

SLOT = DeviceSlot(0, 1, 0)


def _disk(path: str = "/tmp/xyz", slot: DeviceSlot = SLOT) -> AHCIDisk:
    return AHCIDisk(slot, FileStorage(Path(path)))


def _with_install_boot(machine):
    machine = add_device(machine, _disk(), SLOT)
    boot = GRUBBhyveBoot("install", OpenBSDKernel("/bsd.rd", SLOT))
    return machine.replace(boot_configurations={"install": boot})


class TestAddDevice:
    def test_explicit_slot(self, machine):
        updated = add_device(machine, _disk(), SLOT)
        assert updated.devices[SLOT] == _disk()
        assert SLOT not in machine.devices

    def test_occupied_slot_without_replace(self, machine):
        updated = add_device(machine, _disk(), SLOT)
        with pytest.raises(DuplicateError, match="already occupied"):
            add_device(updated, _disk("/tmp/other"), SLOT)
        assert updated.devices[SLOT].backend.path == Path("/tmp/xyz")

    def test_occupied_slot_with_replace(self, machine):
        updated = add_device(machine, _disk(), SLOT)
        replaced = add_device(updated, _disk("/tmp/other"), SLOT, replace=True)
        assert replaced.devices[SLOT].backend.path == Path("/tmp/other")
        assert len(replaced.devices) == len(updated.devices)

    def test_auto_allocation_fills_bus_zero_in_order(self, machine):
        for expected in range(1, 32):
            machine = add_device(machine, XHCIUSBTablet(DeviceSlot(0, 0, 0)))
            assert DeviceSlot(0, expected, 0) in machine.devices
        assert [slot.slot for slot in machine.devices] == list(range(0, 32))
        with pytest.raises(DeviceSlotsExhaustedError):
            add_device(machine, XHCIUSBTablet(DeviceSlot(0, 0, 0)))

    def test_auto_allocation_skips_used_slots(self, machine):
        machine = add_device(machine, _disk(), SLOT)
        assert free_slot(machine) == DeviceSlot(0, 2, 0)

    def test_device_takes_the_chosen_slot(self, machine):
        updated = add_device(machine, XHCIUSBTablet(DeviceSlot(0, 9, 0)), DeviceSlot(0, 4, 0))
        assert updated.devices[DeviceSlot(0, 4, 0)].slot == DeviceSlot(0, 4, 0)

    def test_lpc_must_be_on_bus_zero(self, machine):
        lpc = LPC(DeviceSlot(0, 31, 0), (NMDMTTY("com1"),))
        with pytest.raises(ValidationError, match="bus 0"):
            add_device(machine, lpc, DeviceSlot(1, 31, 0))

    def test_second_lpc_rejected(self, machine):
        machine = add_device(machine, LPC(DeviceSlot(0, 31, 0), (NMDMTTY("com1"),)), DeviceSlot(0, 31, 0))
        with pytest.raises(ValidationError, match="At most one LPC"):
            add_device(machine, LPC(DeviceSlot(0, 30, 0), (NMDMTTY("com1"),)), DeviceSlot(0, 30, 0))


class TestDeleteDevices:
    def test_delete_unreferenced(self, machine):
        machine = add_device(machine, _disk(), SLOT)
        machine = add_device(machine, _disk("/tmp/two", DeviceSlot(0, 2, 0)), DeviceSlot(0, 2, 0))
        updated = delete_devices(machine, [SLOT])
        assert SLOT not in updated.devices
        assert set(updated.devices) == set(machine.devices) - {SLOT}

    def test_delete_nonexistent(self, machine):
        with pytest.raises(NonexistentError, match="No device exists at slot 0:5:0"):
            delete_devices(machine, [DeviceSlot(0, 5, 0)])

    def test_delete_referenced(self, machine):
        machine = _with_install_boot(machine)
        assert boot_configurations_using(machine, SLOT) == ["install"]
        with pytest.raises(ReferencedByBootConfigurationError) as exc:
            delete_devices(machine, [SLOT])
        assert exc.value.references == {"0:1:0": ["install"]}

    def test_batch_is_all_or_nothing(self, machine):
        machine = add_device(machine, _disk(), SLOT)
        with pytest.raises(NonexistentError):
            delete_devices(machine, [SLOT, DeviceSlot(0, 7, 0)])
        assert SLOT in machine.devices

    def test_mixed_failures_keep_references(self, machine):
        machine = _with_install_boot(machine)
        with pytest.raises(ReferencedByBootConfigurationError) as exc:
            delete_devices(machine, [SLOT, DeviceSlot(0, 7, 0)])
        assert exc.value.references == {"0:1:0": ["install"]}
        assert "no device exists at slot(s) 0:7:0" in str(exc.value)
        assert SLOT in machine.devices

"""Tests for bhyvemgr.models module."""

from __future__ import annotations

import base64
import itertools
from pathlib import Path

import pytest

from bhyvemgr.exceptions import ValidationError
from bhyvemgr.models import (
    LPC,
    CPUPin,
    CPUTopology,
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
    StdioTTY,
    TapBackend,
    UEFIBoot,
    VMNetBackend,
    XHCIUSBTablet,
    ZFSVolumeStorage,
    boot_configuration_slots,
)


class TestDeviceSlot:
    def test_parse(self):
        assert DeviceSlot.parse("0:1:0") == DeviceSlot(0, 1, 0)
        assert str(DeviceSlot(2, 31, 7)) == "2:31:7"

    @pytest.mark.parametrize("text", ["0:1", "a:b:c", "0:1:0:0", "", "-1:0:0"])
    def test_parse_malformed(self, text):
        with pytest.raises(ValidationError, match="Malformed device slot"):
            DeviceSlot.parse(text)

    @pytest.mark.parametrize("bus, slot, function", [(256, 0, 0), (0, 32, 0), (0, 0, 8)])
    def test_out_of_range(self, bus, slot, function):
        with pytest.raises(ValidationError, match="must be in"):
            DeviceSlot(bus, slot, function)

    def test_total_order(self):
        slots = [DeviceSlot(1, 0, 0), DeviceSlot(0, 2, 0), DeviceSlot(0, 1, 3), DeviceSlot(0, 1, 0)]
        assert sorted(slots) == [DeviceSlot(0, 1, 0), DeviceSlot(0, 1, 3), DeviceSlot(0, 2, 0), DeviceSlot(1, 0, 0)]

    def test_device_id_is_unique_per_slot(self):
        assert DeviceSlot(0, 1, 0).device_id == 8
        assert DeviceSlot(1, 0, 0).device_id == 256
        assert DeviceSlot(0, 0, 1).device_id == 1


class TestCPUTopology:
    @pytest.mark.parametrize("sockets, cores, threads", itertools.product([1, 2, 3], repeat=3))
    def test_cpus_must_equal_product(self, sockets, cores, threads):
        product = sockets * cores * threads
        topology = CPUTopology(sockets, cores, threads, cpus=product)
        assert topology.cpus == product
        with pytest.raises(ValidationError, match="does not match"):
            CPUTopology(sockets, cores, threads, cpus=product + 1)

    def test_cpus_defaults_to_product(self):
        assert CPUTopology(sockets=2, cores=2, threads=2).cpus == 8
        assert CPUTopology().cpus == 1

    def test_rejects_zero_cores(self):
        with pytest.raises(ValidationError, match="cores"):
            CPUTopology(cores=0)

    def test_pins_are_ordered(self):
        topology = CPUTopology(cores=2, pinned=[CPUPin(3, 1), CPUPin(1, 0)])
        assert topology.pinned == (CPUPin(1, 0), CPUPin(3, 1))

    def test_pin_guest_cpu_must_exist(self):
        with pytest.raises(ValidationError, match="Invalid CPU pin"):
            CPUTopology(cores=1, pinned=[CPUPin(0, 1)])


class TestMemory:
    def test_total(self):
        assert Memory(gigabytes=1, megabytes=128).total_megabytes == 1152

    def test_negative(self):
        with pytest.raises(ValidationError):
            Memory(megabytes=-1)


class TestFlags:
    def test_defaults(self):
        flags = Flags()
        assert flags.yield_cpu_on_halt
        assert flags.generate_acpi_tables
        assert not flags.wire_guest_memory
        assert not flags.realtime_clock_is_utc

    def test_overrides_keep_other_values(self):
        flags = Flags(realtime_clock_is_utc=True).with_overrides({"wire_guest_memory": True})
        assert flags.wire_guest_memory
        assert flags.realtime_clock_is_utc
        assert flags.yield_cpu_on_halt

    def test_unknown_flag(self):
        with pytest.raises(ValidationError, match="Unknown flag"):
            Flags().with_overrides({"turbo": True})


class TestStorageBackends:
    def test_file_requires_absolute_path(self):
        with pytest.raises(ValidationError, match="absolute"):
            FileStorage(Path("disk.img"))

    def test_file_unknown_open_option(self):
        with pytest.raises(ValidationError, match="Unknown open option"):
            FileStorage(Path("/tmp/disk.img"), frozenset({"turbo"}))

    def test_physical_size_needs_logical(self):
        with pytest.raises(ValidationError, match="logical sector size"):
            FileStorage(Path("/tmp/disk.img"), physical_sector_size=4096)

    @pytest.mark.parametrize("size", [0, 1000, 128001])
    def test_zfs_size_must_be_multiple(self, size):
        with pytest.raises(ValidationError, match="multiple of 128000"):
            ZFSVolumeStorage(size)

    def test_zfs_size_optional(self):
        assert ZFSVolumeStorage().expected_size is None
        assert ZFSVolumeStorage(256000).expected_size == 256000


class TestNetworkBackends:
    def test_mac_is_normalized(self):
        backend = TapBackend("tap0", "02:AA:BB:CC:DD:01", "02:aa:bb:cc:dd:02", ("vms",))
        assert backend.host_mac == "02:aa:bb:cc:dd:01"

    @pytest.mark.parametrize("name", ["tap", "eth0", "tap0123456789abcd", "TAP0"])
    def test_invalid_tap_name(self, name):
        with pytest.raises(ValidationError, match="Invalid tap device name"):
            TapBackend(name, "02:00:00:00:00:01", "02:00:00:00:00:02")

    def test_vmnet_name(self):
        assert VMNetBackend("vmnet3", "02:00:00:00:00:01", "02:00:00:00:00:02").name == "vmnet3"
        with pytest.raises(ValidationError):
            VMNetBackend("tap3", "02:00:00:00:00:01", "02:00:00:00:00:02")

    def test_invalid_mac(self):
        with pytest.raises(ValidationError, match="Invalid MAC"):
            TapBackend("tap0", "02:00:00:00:00", "02:00:00:00:00:02")


class TestDevices:
    def test_host_bridge_external_name(self):
        assert HostBridge(DeviceSlot(0, 0, 0)).external_name == "hostbridge"
        assert HostBridge(DeviceSlot(0, 0, 0), vendor="amd").external_name == "amd_hostbridge"

    def test_lpc_requires_backend(self):
        with pytest.raises(ValidationError, match="at least one"):
            LPC(DeviceSlot(0, 31, 0), ())

    def test_lpc_rejects_duplicate_device_names(self):
        with pytest.raises(ValidationError, match="Duplicate LPC TTY"):
            LPC(DeviceSlot(0, 31, 0), (StdioTTY("com1"), NMDMTTY("com1")))

    def test_lpc_backends_ordered_by_device(self):
        lpc = LPC(DeviceSlot(0, 31, 0), (NMDMTTY("com2"), FileTTY("bootrom", Path("/tmp/rom")), StdioTTY("com1")))
        assert [backend.device for backend in lpc.backends] == ["bootrom", "com1", "com2"]
        assert lpc.backend_for("com2") == NMDMTTY("com2")
        assert lpc.backend_for("bootrom").path == Path("/tmp/rom")

    def test_unknown_tty_device(self):
        with pytest.raises(ValidationError, match="Unknown TTY device"):
            StdioTTY("com3")

    def test_framebuffer_limits(self):
        with pytest.raises(ValidationError, match="width"):
            Framebuffer(DeviceSlot(0, 5, 0), width=2000)
        with pytest.raises(ValidationError, match="listen address"):
            Framebuffer(DeviceSlot(0, 5, 0), listen_address="localhost")


class TestBootConfigurations:
    def test_invalid_name(self):
        kernel = OpenBSDKernel("/bsd", DeviceSlot(0, 1, 0))
        with pytest.raises(ValidationError, match="Invalid boot configuration name"):
            GRUBBhyveBoot("has space", kernel)

    def test_referenced_slots(self):
        linux = LinuxKernel("/vmlinuz", DeviceSlot(0, 1, 0), "/initrd.img", DeviceSlot(0, 2, 0))
        boot = GRUBBhyveBoot("linux", linux, (DiskAttachment(DeviceSlot(0, 3, 0)),))
        assert boot_configuration_slots(boot) == {DeviceSlot(0, 1, 0), DeviceSlot(0, 2, 0), DeviceSlot(0, 3, 0)}

    def test_uefi_slots_are_disks(self):
        boot = UEFIBoot("uefi", Path("/fw.fd"), (DiskAttachment(DeviceSlot(0, 4, 0)),))
        assert boot_configuration_slots(boot) == {DeviceSlot(0, 4, 0)}


class TestVirtualMachine:
    def test_devices_sorted_by_slot(self, machine):
        tablet_slot = DeviceSlot(0, 9, 0)
        changed = machine.replace(
            devices={tablet_slot: XHCIUSBTablet(tablet_slot), **machine.devices}
        )
        assert list(changed.devices) == [DeviceSlot(0, 0, 0), tablet_slot]

    def test_short_id(self, machine):
        assert len(machine.short_id) == 22
        padded = machine.short_id + "=="
        assert base64.urlsafe_b64decode(padded) == machine.id.bytes

    def test_invalid_name(self, machine):
        with pytest.raises(ValidationError, match="Invalid machine name"):
            machine.replace(name="bad name")

    def test_device_must_sit_at_its_key(self, machine):
        with pytest.raises(ValidationError, match="is keyed by"):
            machine.replace(devices={DeviceSlot(0, 1, 0): HostBridge(DeviceSlot(0, 0, 0))})

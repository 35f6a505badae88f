"""Tests for bhyvemgr.grub module."""

from __future__ import annotations

from pathlib import Path

import pytest

from bhyvemgr.exceptions import NonexistentError
from bhyvemgr.grub import (
    GRUBDrive,
    compile_grub_bhyve,
    grub_device_map,
    render_device_map,
    render_grub_config,
)
from bhyvemgr.models import (
    AHCIDisk,
    AHCIOpticalDisk,
    DeviceSlot,
    DiskAttachment,
    FileStorage,
    GRUBBhyveBoot,
    LinuxKernel,
    OpenBSDKernel,
    VirtioBlock,
    ZFSVolumeStorage,
)
from bhyvemgr.slots import add_device

HEADER = "# Automatically generated. Do not edit."


@pytest.fixture
def machine_with_storage(machine):
    machine = add_device(machine, AHCIOpticalDisk(DeviceSlot(0, 1, 0), FileStorage(Path("/tmp/install.iso"))))
    machine = add_device(machine, VirtioBlock(DeviceSlot(0, 2, 0), ZFSVolumeStorage()))
    return add_device(machine, AHCIDisk(DeviceSlot(0, 3, 0), FileStorage(Path("/tmp/data.img"))))


class TestDeviceMap:
    def test_numbering_in_slot_order(self, client_config, machine_with_storage):
        boot = GRUBBhyveBoot(
            "install",
            OpenBSDKernel("/bsd.rd", DeviceSlot(0, 1, 0)),
            (DiskAttachment(DeviceSlot(0, 3, 0)), DiskAttachment(DeviceSlot(0, 2, 0))),
        )
        drives = grub_device_map(client_config, machine_with_storage, boot)
        machine_id = machine_with_storage.id
        assert drives == {
            DeviceSlot(0, 1, 0): GRUBDrive("cd0", Path("/tmp/install.iso")),
            DeviceSlot(0, 2, 0): GRUBDrive("hd0", Path(f"/dev/zvol/storage/vm/{machine_id}/disk-16")),
            DeviceSlot(0, 3, 0): GRUBDrive("hd1", Path("/tmp/data.img")),
        }
        assert render_device_map(drives) == (
            "(cd0) /tmp/install.iso\n"
            f"(hd0) /dev/zvol/storage/vm/{machine_id}/disk-16\n"
            "(hd1) /tmp/data.img\n"
        )

    def test_missing_device(self, client_config, machine):
        boot = GRUBBhyveBoot("install", OpenBSDKernel("/bsd.rd", DeviceSlot(0, 1, 0)))
        with pytest.raises(NonexistentError):
            grub_device_map(client_config, machine, boot)


class TestGrubConfig:
    def test_openbsd_from_optical_disk(self):
        boot = GRUBBhyveBoot("install", OpenBSDKernel("/7.4/amd64/bsd.rd", DeviceSlot(0, 1, 0)))
        drives = {DeviceSlot(0, 1, 0): GRUBDrive("cd0", Path("/tmp/install.iso"))}
        assert render_grub_config(boot, drives) == (
            f"{HEADER}\nkopenbsd -h com0 (cd0)/7.4/amd64/bsd.rd\nboot\n"
        )

    def test_openbsd_from_disk(self):
        boot = GRUBBhyveBoot("run", OpenBSDKernel("/bsd", DeviceSlot(0, 3, 0)))
        drives = {DeviceSlot(0, 3, 0): GRUBDrive("hd1", Path("/tmp/data.img"))}
        assert render_grub_config(boot, drives) == (
            f"{HEADER}\nkopenbsd -h com0 -r sd1a (hd1,openbsd1)/bsd\nboot\n"
        )

    def test_linux(self):
        kernel = LinuxKernel(
            "/boot/vmlinuz",
            DeviceSlot(0, 2, 0),
            "/boot/initrd.img",
            DeviceSlot(0, 1, 0),
            ("root=/dev/vda1", "console=ttyS0"),
        )
        drives = {
            DeviceSlot(0, 1, 0): GRUBDrive("cd0", Path("/tmp/install.iso")),
            DeviceSlot(0, 2, 0): GRUBDrive("hd0", Path("/tmp/disk.img")),
        }
        assert render_grub_config(GRUBBhyveBoot("linux", kernel), drives) == (
            f"{HEADER}\n"
            "linux (hd0)/boot/vmlinuz root=/dev/vda1 console=ttyS0\n"
            "initrd (cd0)/boot/initrd.img\n"
            "boot\n"
        )


class TestCompileGrubBhyve:
    def test_arguments(self, client_config, machine):
        device_map = Path("/run/x/grub-device.map")
        process = compile_grub_bhyve(client_config, machine, device_map, Path("/dev/nmdm_x_A"))
        assert process.executable == Path("/usr/local/sbin/grub-bhyve")
        assert process.arguments == (
            "--cons-dev=/dev/nmdm_x_A",
            "--device-map=/run/x/grub-device.map",
            "--root=host",
            f"--directory={client_config.runtime_directory / str(machine.id)}",
            "--memory=1152M",
            machine.short_id,
        )

    def test_without_console(self, client_config, machine):
        process = compile_grub_bhyve(client_config, machine, Path("/m"))
        assert not any(argument.startswith("--cons-dev") for argument in process.arguments)

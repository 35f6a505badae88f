"""Global constants and path configuration for bhyve-vm-manager."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path("/usr/local/etc/bhyvemgr/client.yaml")
DEFAULT_CONFIGURATION_DIRECTORY = Path("/usr/local/etc/bhyvemgr/vm")
DEFAULT_RUNTIME_DIRECTORY = Path("/var/db/bhyvemgr")

DEFAULT_EXECUTABLES = {
    "bhyve": Path("/usr/sbin/bhyve"),
    "bhyvectl": Path("/usr/sbin/bhyvectl"),
    "grub_bhyve": Path("/usr/local/sbin/grub-bhyve"),
    "zfs": Path("/sbin/zfs"),
    "ifconfig": Path("/sbin/ifconfig"),
    "cu": Path("/usr/bin/cu"),
}

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}

MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
DEVICE_SLOT_RE = re.compile(r"^(\d+):(\d+):(\d+)$")
MACHINE_NAME_RE = re.compile(r"^[\w\-.]{1,128}$")
BOOT_CONFIGURATION_NAME_RE = re.compile(r"^[\w\-.]{1,32}$")
TAP_DEVICE_NAME_RE = re.compile(r"^tap[a-z_0-9]{1,13}$")
VMNET_DEVICE_NAME_RE = re.compile(r"^vmnet[a-z_0-9]{1,11}$")
INTERFACE_GROUP_RE = re.compile(r"^[a-z_]{1,15}$")

BUS_MAX = 255
SLOT_MAX = 31
FUNCTION_MAX = 7

ZFS_VOLUME_SIZE_MULTIPLE = 128000
ZFS_VOLUME_DEFAULT_SIZE = 1024000000

TTY_DEVICE_NAMES = ("bootrom", "com1", "com2")

# Switches in the order bhyve receives them.
FLAG_SWITCHES = (
    ("disable_mptable_generation", "-Y"),
    ("exit_on_pause", "-P"),
    ("force_virtio_pci_msi", "-W"),
    ("generate_acpi_tables", "-A"),
    ("guest_apic_is_x2apic", "-x"),
    ("include_guest_memory_in_cores", "-C"),
    ("ignore_unimplemented_msr", "-w"),
    ("realtime_clock_is_utc", "-u"),
    ("wire_guest_memory", "-S"),
    ("yield_cpu_on_halt", "-H"),
)

STORAGE_OPEN_OPTIONS = {
    "no-cache": "nocache",
    "synchronous": "direct",
    "read-only": "ro",
}

VGA_MODES = ("on", "off", "io")

GRUB_CONFIG_HEADER = "# Automatically generated. Do not edit."
GRUB_DEVICE_MAP_NAME = "grub-device.map"
GRUB_CONFIG_NAME = "grub.cfg"

XML_NAMESPACE = "urn:bhyvemgr:vm:1"
MACHINE_FILE_SUFFIX = ".bvmx"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

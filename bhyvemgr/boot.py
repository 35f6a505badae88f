"""Boot configuration merging and selection for bhyve-vm-manager."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from bhyvemgr.exceptions import DuplicateError, NonexistentError, ValidationError, combine
from bhyvemgr.machines import boot_reference_problems, check_machine
from bhyvemgr.models import (
    BootConfiguration,
    DeviceSlot,
    DiskAttachment,
    GRUBBhyveBoot,
    LinuxKernel,
    OpenBSDKernel,
    UEFIBoot,
    VirtualMachine,
)
from bhyvemgr.utils import log


def merge_boot_configurations(
    machine: VirtualMachine,
    configurations: Iterable[BootConfiguration],
    allow_update: bool = False,
) -> VirtualMachine:
    """Return a machine with the configurations added, or replaced when allow_update is set.

    Device references are checked against the machine's devices up front, so a
    configuration naming a missing or non-storage slot is rejected here rather
    than when the machine is run.
    """
    configurations = list(configurations)
    errors = []
    merged = dict(machine.boot_configurations)
    batch_names: List[str] = []
    for config in configurations:
        if config.name in batch_names:
            errors.append(DuplicateError(f"Boot configuration '{config.name}' appears more than once"))
            continue
        batch_names.append(config.name)
        if config.name in merged and not allow_update:
            errors.append(DuplicateError(f"Boot configuration '{config.name}' already exists"))
            continue
        problems = boot_reference_problems(machine, config)
        if problems:
            errors.append(ValidationError("; ".join(problems)))
            continue
        merged[config.name] = config

    if errors:
        error_types = {type(error) for error in errors}
        raise combine(errors, error_types.pop() if len(error_types) == 1 else ValidationError)

    for config in configurations:
        action = "Updated" if config.name in machine.boot_configurations else "Added"
        log("INFO", f"{action} boot configuration '{config.name}'")
    return check_machine(machine.replace(boot_configurations=merged))


def remove_boot_configurations(machine: VirtualMachine, names: Iterable[str]) -> VirtualMachine:
    names = list(names)
    missing = [name for name in names if name not in machine.boot_configurations]
    if missing:
        raise combine(
            [NonexistentError(f"No boot configuration named '{name}'") for name in missing],
            NonexistentError,
        )
    remaining = {
        name: config for name, config in machine.boot_configurations.items() if name not in names
    }
    return machine.replace(boot_configurations=remaining)


def select_boot_configuration(machine: VirtualMachine, name: Optional[str] = None) -> BootConfiguration:
    """Pick the named configuration, or the only one when no name is given."""
    if name is not None:
        try:
            return machine.boot_configurations[name]
        except KeyError:
            raise NonexistentError(f"No boot configuration named '{name}' on machine {machine.id}")
    if len(machine.boot_configurations) == 1:
        return next(iter(machine.boot_configurations.values()))
    available = ", ".join(machine.boot_configurations) or "none"
    raise NonexistentError(
        f"Machine {machine.id} needs an explicit boot configuration (available: {available})"
    )


def _slot(entry: dict, key: str, where: str) -> DeviceSlot:
    raw = entry.get(key)
    if raw is None:
        raise ValidationError(f"{where}: '{key}' is required")
    if not isinstance(raw, str):
        # YAML 1.1 reads unquoted 1:0:0 as a base-60 integer
        raise ValidationError(f"{where}: '{key}' must be a quoted slot such as \"0:1:0\" (got {raw!r})")
    return DeviceSlot.parse(raw)


def _kernel(entry, where: str):
    if not isinstance(entry, dict):
        raise ValidationError(f"{where}: 'kernel' must be a mapping")
    kind = entry.get("type")
    if kind == "openbsd":
        return OpenBSDKernel(
            kernel_path=str(entry.get("kernel_path", "/bsd")),
            boot_device=_slot(entry, "boot_device", where),
        )
    if kind == "linux":
        arguments = entry.get("arguments") or []
        if isinstance(arguments, str):
            arguments = arguments.split()
        for key in ("kernel_path", "initrd_path"):
            if not entry.get(key):
                raise ValidationError(f"{where}: '{key}' is required for Linux kernels")
        return LinuxKernel(
            kernel_path=str(entry["kernel_path"]),
            kernel_device=_slot(entry, "kernel_device", where),
            initrd_path=str(entry["initrd_path"]),
            initrd_device=_slot(entry, "initrd_device", where),
            arguments=tuple(str(argument) for argument in arguments),
        )
    raise ValidationError(f"{where}: unknown kernel type '{kind}'. Supported: openbsd, linux")


def _disk(entry, where: str) -> DiskAttachment:
    if isinstance(entry, dict):
        return DiskAttachment(_slot(entry, "slot", where), str(entry.get("comment", "")))
    return DiskAttachment(_slot({"slot": entry}, "slot", where))


def parse_boot_configuration(entry) -> BootConfiguration:
    if not isinstance(entry, dict) or "name" not in entry:
        raise ValidationError("Each boot configuration must be a mapping with a 'name'")
    name = str(entry["name"])
    where = f"Boot configuration '{name}'"
    disks = tuple(_disk(disk, where) for disk in entry.get("disks") or [])
    comment = str(entry.get("comment", ""))
    kind = entry.get("type", "grub-bhyve")
    if kind == "grub-bhyve":
        return GRUBBhyveBoot(name, _kernel(entry.get("kernel"), where), disks, comment)
    if kind == "uefi":
        if not entry.get("firmware"):
            raise ValidationError(f"{where}: 'firmware' is required for UEFI boot")
        return UEFIBoot(name, Path(str(entry["firmware"])), disks, comment)
    raise ValidationError(f"{where}: unknown type '{kind}'. Supported: grub-bhyve, uefi")


def load_boot_configurations(path: Path) -> List[BootConfiguration]:
    """Read a YAML list of boot configurations."""
    if not path.exists():
        raise NonexistentError(f"Boot configuration file missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ValidationError(f"Boot configuration file {path} contains invalid YAML: {exc}")
    if isinstance(data, dict):
        data = data.get("boot_configurations")
    if not isinstance(data, list):
        raise ValidationError(f"Boot configuration file {path} must contain a list of boot configurations")
    configurations = [parse_boot_configuration(entry) for entry in data]
    log("INFO", f"Parsed {len(configurations)} boot configuration(s) from {path}")
    return configurations

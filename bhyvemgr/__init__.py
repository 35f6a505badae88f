"""bhyve-vm-manager package."""

__all__ = [
    "boot",
    "cli",
    "commands",
    "config",
    "constants",
    "database",
    "exceptions",
    "grub",
    "machines",
    "models",
    "processes",
    "slots",
    "storage",
    "utils",
]

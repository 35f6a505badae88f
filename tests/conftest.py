"""Shared test fixtures."""

from __future__ import annotations

import uuid
from pathlib import Path

import pytest

from bhyvemgr.config import ClientConfiguration
from bhyvemgr.constants import DEFAULT_EXECUTABLES
from bhyvemgr.database import MachineDatabase
from bhyvemgr.machines import new_machine
from bhyvemgr.models import VirtualMachine

MACHINE_ID = uuid.UUID("b2d1a4c6-3f1e-4c9a-8e57-0d6f2a9b7c31")


@pytest.fixture
def client_config(tmp_path: Path) -> ClientConfiguration:
    """A client configuration rooted in the test's temporary directory."""
    return ClientConfiguration(
        configuration_directory=tmp_path / "vm",
        runtime_directory=tmp_path / "run",
        zfs_root="storage/vm",
        executables=dict(DEFAULT_EXECUTABLES),
    )


@pytest.fixture
def machine() -> VirtualMachine:
    """Two CPUs, 1GB+128MB of memory and only the seeded host bridge."""
    return new_machine(
        "test-vm",
        machine_id=MACHINE_ID,
        cpu_count=2,
        memory_gigabytes=1,
        memory_megabytes=128,
    )


@pytest.fixture
def database(client_config: ClientConfiguration) -> MachineDatabase:
    return MachineDatabase(client_config.configuration_directory)


@pytest.fixture
def config_file(tmp_path: Path, client_config: ClientConfiguration) -> Path:
    """A YAML client configuration pointing at the temporary directories."""
    path = tmp_path / "client.yaml"
    path.write_text(
        "\n".join(
            [
                f"virtual_machine_configuration_directory: {client_config.configuration_directory}",
                f"virtual_machine_runtime_directory: {client_config.runtime_directory}",
                "zfs_root: storage/vm",
            ]
        )
        + "\n"
    )
    return path

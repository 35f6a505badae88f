"""Process descriptions and execution for bhyve-vm-manager."""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import List, NamedTuple, NoReturn, Tuple

from bhyvemgr.exceptions import ProcessFailureError
from bhyvemgr.utils import log, run


class ProcessDescription(NamedTuple):
    executable: Path
    arguments: Tuple[str, ...] = ()

    @property
    def argv(self) -> List[str]:
        return [str(self.executable), *self.arguments]

    def render(self) -> str:
        """Shell-quoted command line; splitting it with shlex gives argv back."""
        return shlex.join(self.argv)


def spawn_and_wait(description: ProcessDescription) -> int:
    """Run a process to completion and return its exit status."""
    try:
        result = run(description.argv, check=False)
    except OSError as exc:
        raise ProcessFailureError(f"Cannot run {description.executable}: {exc}")
    return result.returncode


def replace_current_process(description: ProcessDescription) -> NoReturn:
    """Replace this process with the described one. Returns only by raising."""
    log("DEBUG", f"Executing: {description.render()}")
    try:
        os.execv(str(description.executable), description.argv)
    except OSError as exc:
        raise ProcessFailureError(f"Cannot execute {description.executable}: {exc}")
    raise ProcessFailureError(f"Execution of {description.executable} returned unexpectedly")

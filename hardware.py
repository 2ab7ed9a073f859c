# hardware.py
import logging
import shlex
import subprocess
from abc import ABC, abstractmethod

logger = logging.getLogger("machinectl.hardware")


class HardwareFailure(Exception):
    """The start-cycle command did not succeed. Callers treat every cause alike."""


class HardwareGateway(ABC):
    @abstractmethod
    def start_cycle(self, machine_id):
        """Start a cycle on ``machine_id``; raise on any failure."""


class CommandGateway(HardwareGateway):
    """
    Starts a cycle by running a shell command, e.g.
    ``smartctl start --machine {machine_id}``.
    A non-zero exit, a timeout, or a command that cannot be built or
    launched is a failure.
    """

    def __init__(self, command_template, timeout_seconds=30):
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def start_cycle(self, machine_id):
        try:
            command = self.command_template.format(machine_id=shlex.quote(machine_id))
        except (KeyError, IndexError, ValueError) as e:
            raise HardwareFailure(f"bad hardware_command template {self.command_template!r}: {e!r}") from e
        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout_seconds if self.timeout_seconds else None,
            )
        except subprocess.TimeoutExpired as e:
            raise HardwareFailure(f"start cycle timed out after {self.timeout_seconds}s") from e
        except OSError as e:
            raise HardwareFailure(f"could not launch start command: {e}") from e

        if result.returncode != 0:
            error = (result.stderr or result.stdout or "").strip()
            raise HardwareFailure(f"start command exited {result.returncode}: {error}")
        logger.debug("Start command for %s succeeded", machine_id)


class SimulatedGateway(HardwareGateway):
    """In-process stand-in for the control channel; fails for ``failing`` ids."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def start_cycle(self, machine_id):
        self.calls.append(machine_id)
        if machine_id in self.failing:
            raise HardwareFailure(f"simulated failure for {machine_id}")

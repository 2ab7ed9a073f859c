# engine.py
import logging
import threading
from dataclasses import dataclass

from auth import DEFAULT_DENIED_TOKENS, TokenValidator
from cache import MachineCache
from hardware import CommandGateway, HardwareGateway, SimulatedGateway
from models import MachineStatus, Response, ResultKind, placeholder_machine
from storage import Storage, utcnow

logger = logging.getLogger("machinectl.engine")

DEFAULT_HOLD_SECONDS = 900
DEFAULT_CACHE_SIZE = 1024
DEFAULT_HARDWARE_TIMEOUT = 30


def _log_transition(machine_id, old_state, new_state, extra=""):
    logger.info("Machine %s: %s → %s %s", machine_id, old_state.value, new_state.value, extra)


def _not_found(message):
    return Response(ResultKind.NOT_FOUND, placeholder_machine(), message)


class MachineLocks:
    """One lock per machine id, created on first use and shared by every engine."""

    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def for_machine(self, machine_id):
        with self._guard:
            return self._locks.setdefault(machine_id, threading.Lock())


class ReservationEngine:
    def __init__(self, storage: Storage, cache: MachineCache, locks: MachineLocks,
                 hold_seconds=DEFAULT_HOLD_SECONDS):
        self.storage = storage
        self.cache = cache
        self.locks = locks
        self.hold_seconds = hold_seconds

    def reserve(self, location_id, job_id) -> Response:
        """
        Bind the first AVAILABLE machine at ``location_id`` to ``job_id``.
        Selection and both attribute writes happen in one store transaction.
        """
        machine = self.storage.reserve_first_available(location_id, job_id, self.hold_seconds)
        if machine is None:
            logger.info("No available machine at %s for job %s", location_id, job_id)
            return _not_found(f"No available machine at location {location_id}")

        # Cache refreshes happen under the machine lock from the store's
        # current row, so a start that slipped in first is not overwritten.
        with self.locks.for_machine(machine.machine_id):
            self.cache.put(machine.machine_id, self.storage.get_machine(machine.machine_id))
        hold = f", hold_until={machine.hold_expires_at}" if machine.hold_expires_at else ""
        _log_transition(machine.machine_id, MachineStatus.AVAILABLE, machine.status, f"(job={job_id}{hold})")
        return Response(ResultKind.OK, machine)


class LifecycleEngine:
    def __init__(self, storage: Storage, cache: MachineCache, gateway: HardwareGateway, locks: MachineLocks):
        self.storage = storage
        self.cache = cache
        self.gateway = gateway
        self.locks = locks

    def start(self, machine_id) -> Response:
        """
        Start the cycle of a machine awaiting drop-off. The hardware call
        completes before any status write; a failed call leaves the machine
        in ERROR with its job id kept.
        """
        with self.locks.for_machine(machine_id):
            machine = self.storage.get_machine(machine_id)
            if machine is None:
                return _not_found(f"Machine {machine_id} not found")
            if machine.status is not MachineStatus.AWAITING_DROPOFF:
                logger.info("Refusing to start %s in state %s", machine_id, machine.status.value)
                return Response(ResultKind.INVALID_STATE, machine,
                                f"Machine {machine_id} is {machine.status.value}, not AWAITING_DROPOFF")

            try:
                self.gateway.start_cycle(machine_id)
            except Exception as e:
                # Any gateway error is a hardware failure.
                logger.warning("Start cycle failed for %s: %r", machine_id, e)
                updated = self._finish(machine_id, MachineStatus.ERROR)
                _log_transition(machine_id, MachineStatus.AWAITING_DROPOFF, MachineStatus.ERROR,
                                f"(job={updated.current_job_id}, error={e})")
                return Response(ResultKind.HARDWARE_ERROR, updated, str(e) or type(e).__name__)

            updated = self._finish(machine_id, MachineStatus.RUNNING)
            _log_transition(machine_id, MachineStatus.AWAITING_DROPOFF, MachineStatus.RUNNING,
                            f"(job={updated.current_job_id})")
            return Response(ResultKind.OK, updated, "Cycle started")

    def _finish(self, machine_id, new_status):
        updated = self.storage.transition(machine_id, MachineStatus.AWAITING_DROPOFF, new_status)
        if updated is None:
            # Only another process can get here; the hardware outcome still wins.
            logger.error("Machine %s changed during start; forcing %s", machine_id, new_status.value)
            self.storage.set_status(machine_id, new_status)
            updated = self.storage.get_machine(machine_id)
        self.cache.put(machine_id, updated)
        return updated

    def release(self, machine_id, job_id=None) -> Response:
        """Cancel a hold: AWAITING_DROPOFF back to AVAILABLE, job cleared."""
        with self.locks.for_machine(machine_id):
            machine = self.storage.get_machine(machine_id)
            if machine is None:
                return _not_found(f"Machine {machine_id} not found")
            if machine.status is not MachineStatus.AWAITING_DROPOFF:
                return Response(ResultKind.INVALID_STATE, machine,
                                f"Machine {machine_id} is {machine.status.value}, not AWAITING_DROPOFF")
            if job_id is not None and machine.current_job_id != job_id:
                return Response(ResultKind.INVALID_STATE, machine,
                                f"Machine {machine_id} is held for job {machine.current_job_id}, not {job_id}")

            updated = self.storage.transition(machine_id, MachineStatus.AWAITING_DROPOFF, MachineStatus.AVAILABLE,
                                              clear_job=True, job_id=machine.current_job_id)
            if updated is None:
                current = self.storage.get_machine(machine_id)
                return Response(ResultKind.INVALID_STATE, current, f"Machine {machine_id} changed during release")

            self.cache.put(machine_id, updated)
            _log_transition(machine_id, MachineStatus.AWAITING_DROPOFF, MachineStatus.AVAILABLE,
                            f"(released job={machine.current_job_id})")
            return Response(ResultKind.OK, updated, "Hold released")

    def sweep_expired_holds(self, now=None):
        """Release every hold that expired by ``now``. Returns the released machines."""
        now = now or utcnow()
        released = []
        for machine in self.storage.list_expired_holds(now):
            with self.locks.for_machine(machine.machine_id):
                updated = self.storage.transition(
                    machine.machine_id, MachineStatus.AWAITING_DROPOFF, MachineStatus.AVAILABLE,
                    clear_job=True, job_id=machine.current_job_id, expires_before=now,
                )
                if updated is None:
                    continue
                self.cache.put(updated.machine_id, updated)
            _log_transition(updated.machine_id, MachineStatus.AWAITING_DROPOFF, MachineStatus.AVAILABLE,
                            f"(hold expired at {machine.hold_expires_at}, job={machine.current_job_id})")
            released.append(updated)
        return released


class ReadPath:
    def __init__(self, storage: Storage, cache: MachineCache, locks: MachineLocks):
        self.storage = storage
        self.cache = cache
        self.locks = locks

    def get_machine(self, machine_id) -> Response:
        cached = self.cache.get(machine_id)
        if cached is not None:
            return Response(ResultKind.OK, cached)

        machine = self.storage.get_machine(machine_id)
        if machine is None:
            return _not_found(f"Machine {machine_id} not found")

        # A writer holding the lock will refresh the cache itself.
        lock = self.locks.for_machine(machine_id)
        if lock.acquire(blocking=False):
            try:
                machine = self.storage.get_machine(machine_id) or machine
                self.cache.put(machine_id, machine)
            finally:
                lock.release()
        return Response(ResultKind.OK, machine)


# ---------------- Wiring ----------------
@dataclass
class Services:
    storage: Storage
    cache: MachineCache
    gateway: HardwareGateway
    validator: TokenValidator
    reservations: ReservationEngine
    lifecycle: LifecycleEngine
    reads: ReadPath


def _config_number(storage, key, default, cast=int):
    raw = storage.get_config(key, default=str(default))
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid config %s=%r, using %s", key, raw, default)
        return default


def _config_list(storage, key, default=()):
    raw = storage.get_config(key)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def build_services(storage: Storage, gateway: HardwareGateway = None, cache: MachineCache = None) -> Services:
    """
    Wire the engines from the runtime config stored alongside the machines.
    The cache is built once here and handed to every component that reads
    or writes machine records.
    """
    if cache is None:
        cache = MachineCache(max_entries=_config_number(storage, "cache_size", DEFAULT_CACHE_SIZE))
    if gateway is None:
        command = storage.get_config("hardware_command")
        if command:
            timeout = _config_number(storage, "hardware_timeout", DEFAULT_HARDWARE_TIMEOUT, cast=float)
            gateway = CommandGateway(command, timeout_seconds=timeout)
        else:
            gateway = SimulatedGateway()

    validator = TokenValidator(
        denied=_config_list(storage, "denied_tokens", DEFAULT_DENIED_TOKENS),
        allowed=_config_list(storage, "allowed_tokens") or None,
    )
    locks = MachineLocks()
    return Services(
        storage=storage,
        cache=cache,
        gateway=gateway,
        validator=validator,
        reservations=ReservationEngine(storage, cache, locks,
                                       _config_number(storage, "hold_seconds", DEFAULT_HOLD_SECONDS)),
        lifecycle=LifecycleEngine(storage, cache, gateway, locks),
        reads=ReadPath(storage, cache, locks),
    )

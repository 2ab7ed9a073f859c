# storage.py
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from migrate import migrate
from models import Machine, MachineStatus

HOLDING_STATUSES = (MachineStatus.AWAITING_DROPOFF, MachineStatus.RUNNING)


def utcnow():
    return datetime.now(timezone.utc)


def iso(dt):
    # Fixed-width timestamps so stored values compare correctly as text.
    return dt.isoformat(timespec="microseconds")


class Storage:
    """Authoritative machine state, kept in SQLite.

    One connection is shared by every thread in the process; ``_lock``
    serializes access to it and ``BEGIN IMMEDIATE`` serializes writers
    across processes sharing the same file.
    """

    def __init__(self, db_path="machines.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Better concurrency for multiple processes
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")

        self._init_schema()

    def _init_schema(self):
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS machines (
                machine_id TEXT PRIMARY KEY,
                location_id TEXT NOT NULL,
                current_job_id TEXT,
                status TEXT NOT NULL
            )
            """)
            migrate(conn)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_machines_location ON machines (location_id, status)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

    @contextmanager
    def _transaction(self):
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def _fetchone(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def close(self):
        self.conn.close()

    # ---------------- Machine reads ----------------
    def get_machine(self, machine_id):
        row = self._fetchone("SELECT * FROM machines WHERE machine_id=?", (machine_id,))
        return Machine.from_row(row) if row else None

    def list_at_location(self, location_id):
        """Machines at a location in enumeration (insertion) order."""
        rows = self._fetchall("SELECT * FROM machines WHERE location_id=? ORDER BY rowid", (location_id,))
        return [Machine.from_row(r) for r in rows]

    def list_machines(self, location_id=None, status=None):
        clauses, params = [], []
        if location_id:
            clauses.append("location_id=?")
            params.append(location_id)
        if status:
            clauses.append("status=?")
            params.append(MachineStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM machines {where} ORDER BY rowid", tuple(params))
        return [Machine.from_row(r) for r in rows]

    def status_counts(self):
        rows = self._fetchall("SELECT status, COUNT(*) AS count FROM machines GROUP BY status")
        return {row["status"]: row["count"] for row in rows}

    def list_expired_holds(self, now=None):
        now_iso = iso(now or utcnow())
        rows = self._fetchall("""
            SELECT * FROM machines
            WHERE status=? AND hold_expires_at IS NOT NULL AND hold_expires_at <= ?
            ORDER BY rowid
        """, (MachineStatus.AWAITING_DROPOFF.value, now_iso))
        return [Machine.from_row(r) for r in rows]

    # ---------------- Machine writes ----------------
    def add_machine(self, machine_id, location_id, status=MachineStatus.AVAILABLE, current_job_id=None):
        """Provision a machine. Raises sqlite3.IntegrityError on a duplicate id."""
        status = MachineStatus(status)
        if status in HOLDING_STATUSES and not current_job_id:
            raise ValueError(f"status {status.value} requires a job id")
        if status is MachineStatus.AVAILABLE and current_job_id:
            raise ValueError("an AVAILABLE machine cannot carry a job id")
        now_iso = iso(utcnow())
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO machines (machine_id, location_id, current_job_id, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (machine_id, location_id, current_job_id, status.value, now_iso, now_iso))
            row = conn.execute("SELECT * FROM machines WHERE machine_id=?", (machine_id,)).fetchone()
        return Machine.from_row(row)

    def set_job(self, machine_id, job_id):
        with self._transaction() as conn:
            updated = conn.execute(
                "UPDATE machines SET current_job_id=?, updated_at=? WHERE machine_id=?",
                (job_id, iso(utcnow()), machine_id),
            ).rowcount
        return updated == 1

    def set_status(self, machine_id, status):
        with self._transaction() as conn:
            updated = conn.execute(
                "UPDATE machines SET status=?, updated_at=? WHERE machine_id=?",
                (MachineStatus(status).value, iso(utcnow()), machine_id),
            ).rowcount
        return updated == 1

    def reserve_first_available(self, location_id, job_id, hold_seconds=0, now=None):
        """
        Atomically bind the first AVAILABLE machine at a location to a job.
        Job id, status and hold expiry are written in one statement inside
        a single IMMEDIATE transaction, so two callers can never commit the
        same machine. Returns the post-write Machine, or None.
        """
        now = now or utcnow()
        now_iso = iso(now)
        expires = iso(now + timedelta(seconds=hold_seconds)) if hold_seconds and hold_seconds > 0 else None

        with self._transaction() as conn:
            row = conn.execute("""
                SELECT machine_id FROM machines
                WHERE location_id=? AND status=?
                ORDER BY rowid
                LIMIT 1
            """, (location_id, MachineStatus.AVAILABLE.value)).fetchone()
            if not row:
                return None

            machine_id = row["machine_id"]
            updated = conn.execute("""
                UPDATE machines
                SET current_job_id=?, status=?, hold_expires_at=?, updated_at=?
                WHERE machine_id=? AND status=?
            """, (job_id, MachineStatus.AWAITING_DROPOFF.value, expires, now_iso,
                  machine_id, MachineStatus.AVAILABLE.value)).rowcount
            if updated != 1:
                return None
            row = conn.execute("SELECT * FROM machines WHERE machine_id=?", (machine_id,)).fetchone()
        return Machine.from_row(row)

    def transition(self, machine_id, expected, new, clear_job=False, job_id=None, expires_before=None):
        """
        Compare-and-swap a machine's status from ``expected`` to ``new``.
        The hold expiry is always cleared. ``job_id`` additionally requires
        the machine to be bound to that job; ``expires_before`` requires its
        hold to have expired by then. Returns the post-write Machine, or None
        when any condition no longer holds.
        """
        sets = ["status=?", "hold_expires_at=NULL", "updated_at=?"]
        params = [MachineStatus(new).value, iso(utcnow())]
        if clear_job:
            sets.append("current_job_id=NULL")

        where = ["machine_id=?", "status=?"]
        params += [machine_id, MachineStatus(expected).value]
        if job_id is not None:
            where.append("current_job_id=?")
            params.append(job_id)
        if expires_before is not None:
            where.append("hold_expires_at IS NOT NULL AND hold_expires_at <= ?")
            params.append(iso(expires_before))

        with self._transaction() as conn:
            updated = conn.execute(
                f"UPDATE machines SET {', '.join(sets)} WHERE {' AND '.join(where)}",
                tuple(params),
            ).rowcount
            if updated != 1:
                return None
            row = conn.execute("SELECT * FROM machines WHERE machine_id=?", (machine_id,)).fetchone()
        return Machine.from_row(row)

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        row = self._fetchone("SELECT value FROM config WHERE key=?", (key,))
        return row["value"] if row else default

    def get_config_row(self, key):
        return self._fetchone("SELECT key, value, updated_at FROM config WHERE key=?", (key,))

    def list_config(self):
        return self._fetchall("SELECT key, value, updated_at FROM config ORDER BY key")

    def set_config(self, key, value):
        now = iso(utcnow())
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

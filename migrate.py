# migrate.py
import sqlite3
import sys

# Columns added after the first release of the machines table.
ADDED_COLUMNS = [
    ("hold_expires_at", "TEXT"),
    ("created_at", "TEXT"),
    ("updated_at", "TEXT"),
]


def migrate(conn):
    """Add any missing columns to an existing machines table. Safe to re-run."""
    existing = {row[1] for row in conn.execute("PRAGMA table_info(machines)")}
    added = []
    for name, col_type in ADDED_COLUMNS:
        if name not in existing:
            conn.execute(f"ALTER TABLE machines ADD COLUMN {name} {col_type};")
            added.append(name)
    return added


if __name__ == "__main__":
    path = sys.argv[1] if len(sys.argv) > 1 else "machines.db"
    conn = sqlite3.connect(path)
    added = migrate(conn)
    conn.commit()
    conn.close()
    print(f"Added columns: {', '.join(added)}" if added else "Schema already up to date.")

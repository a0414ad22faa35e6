import sqlite3
from contextlib import contextmanager

from config import DB_PATH


def init_db():
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id                    INTEGER PRIMARY KEY AUTOINCREMENT,
                email                 TEXT    NOT NULL UNIQUE,
                name                  TEXT    NOT NULL DEFAULT '',
                password_hash         TEXT    NOT NULL,
                notifications_enabled INTEGER NOT NULL DEFAULT 1,
                push_subscription     TEXT,
                created_at            TEXT    NOT NULL DEFAULT ''
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS medications (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id         INTEGER NOT NULL REFERENCES users(id),
                name            TEXT    NOT NULL,
                dosage          TEXT    NOT NULL,
                timings         TEXT    NOT NULL DEFAULT '[]',
                instructions    TEXT    NOT NULL DEFAULT '',
                total_stock     INTEGER NOT NULL DEFAULT 0 CHECK (total_stock >= 0),
                remaining_stock INTEGER NOT NULL DEFAULT 0 CHECK (remaining_stock >= 0),
                active          INTEGER NOT NULL DEFAULT 1,
                created_at      TEXT    NOT NULL DEFAULT '',
                updated_at      TEXT    NOT NULL DEFAULT ''
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS dose_events (
                id             INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id        INTEGER NOT NULL,
                medication_id  INTEGER NOT NULL REFERENCES medications(id),
                date           TEXT    NOT NULL,
                scheduled_time TEXT    NOT NULL,
                status         TEXT    NOT NULL DEFAULT 'upcoming'
                               CHECK (status IN ('upcoming', 'taken', 'missed', 'skipped')),
                taken_at       TEXT,
                created_at     TEXT    NOT NULL DEFAULT '',
                updated_at     TEXT    NOT NULL DEFAULT ''
            )
        """)
        # Migrate dose_events: stock decrement marker
        dose_cols = [row[1] for row in conn.execute("PRAGMA table_info(dose_events)")]
        if "stock_decremented" not in dose_cols:
            conn.execute(
                "ALTER TABLE dose_events ADD COLUMN stock_decremented INTEGER NOT NULL DEFAULT 0"
            )
            conn.execute("UPDATE dose_events SET stock_decremented = 1 WHERE status = 'taken'")

        # One ledger row per dose slot
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_dose_events_slot"
            " ON dose_events(medication_id, date, scheduled_time)"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_medications_user_id ON medications(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_dose_events_user_date ON dose_events(user_id, date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_dose_events_date_status ON dose_events(date, status)")
        conn.commit()


@contextmanager
def get_db():
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()

"""Daily dose scheduling: slot materialization, dose taking and skipping.

A dose slot is one (medication, date, HH:MM) combination. Slots are stored
lazily in ``dose_events`` the first time they are queried or acted upon, and
the unique index on (medication_id, date, scheduled_time) keeps at most one
ledger row per slot.
"""
import json
import logging
import re
from datetime import date, datetime
from typing import Iterable, Optional

from config import LOW_STOCK_PCT, MAX_TIMINGS, _hhmm, _now_local, _to_utc_storage, _today_str
from db import get_db
from errors import NotFound, ValidationFailure

logger = logging.getLogger(__name__)

TIMING_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

STATUS_UPCOMING = "upcoming"
STATUS_TAKEN = "taken"
STATUS_MISSED = "missed"
STATUS_SKIPPED = "skipped"
DOSE_STATUSES = (STATUS_UPCOMING, STATUS_TAKEN, STATUS_MISSED, STATUS_SKIPPED)

_INSERT_SLOT_SQL = (
    "INSERT INTO dose_events"
    " (user_id, medication_id, date, scheduled_time, status, created_at, updated_at)"
    " VALUES (?,?,?,?,?,?,?)"
    " ON CONFLICT(medication_id, date, scheduled_time) DO NOTHING"
)


# ── Time and validation helpers ──────────────────────────────────────────────

def validate_timing(value: str) -> str:
    value = (value or "").strip()
    if not TIMING_RE.match(value):
        raise ValidationFailure(f"Invalid timing '{value}', expected HH:MM (24-hour)")
    return value


def validate_timings(values: Iterable[str]) -> list[str]:
    """Validate a timing list: 1 to MAX_TIMINGS unique HH:MM strings, order kept."""
    timings = [validate_timing(v) for v in values]
    if not timings:
        raise ValidationFailure("At least one timing must be specified")
    if len(timings) > MAX_TIMINGS:
        raise ValidationFailure(f"At most {MAX_TIMINGS} timings are allowed")
    if len(set(timings)) != len(timings):
        raise ValidationFailure("Timings must be unique")
    return timings


def validate_day(value: str) -> str:
    try:
        return date.fromisoformat((value or "").strip()).isoformat()
    except ValueError:
        raise ValidationFailure(f"Invalid date '{value}', expected YYYY-MM-DD") from None


def initial_status(day: str, timing: str, now: Optional[datetime] = None) -> str:
    """Status for a freshly materialized slot.

    Zero-padded HH:MM and ISO dates both compare correctly as strings.
    """
    now = now or _now_local()
    today = _today_str(now)
    if day < today:
        return STATUS_MISSED
    if day > today:
        return STATUS_UPCOMING
    return STATUS_MISSED if timing < _hhmm(now) else STATUS_UPCOMING


def stock_percentage(remaining: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(remaining / total * 100)


# ── Row serialization ────────────────────────────────────────────────────────

def medication_dict(row) -> dict:
    med = dict(row)
    med["timings"] = json.loads(med["timings"] or "[]")
    med["active"] = bool(med["active"])
    pct = stock_percentage(med["remaining_stock"], med["total_stock"])
    med["stock_percentage"] = pct
    med["low_stock"] = pct <= LOW_STOCK_PCT
    return med


def dose_dict(row) -> dict:
    dose = dict(row)
    dose.pop("stock_decremented", None)
    return dose


def get_medication(conn, user_id: int, medication_id: int):
    row = conn.execute(
        "SELECT * FROM medications WHERE id=? AND user_id=?", (medication_id, user_id)
    ).fetchone()
    if row is None:
        raise NotFound("Medication not found")
    return row


def _get_slot(conn, user_id: int, medication_id: int, day: str, scheduled_time: str):
    return conn.execute(
        "SELECT * FROM dose_events"
        " WHERE user_id=? AND medication_id=? AND date=? AND scheduled_time=?",
        (user_id, medication_id, day, scheduled_time),
    ).fetchone()


def _require_slot(conn, med, day: str, scheduled_time: str):
    """Return the existing ledger row, or None when the slot is still unmaterialized.

    Raises NotFound when the time is neither scheduled nor recorded.
    """
    existing = _get_slot(conn, med["user_id"], med["id"], day, scheduled_time)
    if existing is None and scheduled_time not in json.loads(med["timings"] or "[]"):
        raise NotFound("Dose slot not found")
    return existing


# ── Materialization ──────────────────────────────────────────────────────────

def seed_doses(conn, user_id: int, medication_id: int, timings: list[str],
               day: Optional[str] = None, now: Optional[datetime] = None) -> int:
    """Insert missing slots for one medication on one day. Caller commits."""
    now = now or _now_local()
    day = day or _today_str(now)
    stamp = _to_utc_storage(now)
    created = 0
    for timing in timings:
        cur = conn.execute(
            _INSERT_SLOT_SQL,
            (user_id, medication_id, day, timing, initial_status(day, timing, now), stamp, stamp),
        )
        created += cur.rowcount
    return created


def prune_upcoming(conn, user_id: int, medication_id: int, timings: list[str],
                   day: Optional[str] = None) -> int:
    """Drop ``upcoming`` slots for timings a medication no longer has. Caller commits."""
    if not timings:
        return 0
    day = day or _today_str()
    placeholders = ",".join("?" for _ in timings)
    cur = conn.execute(
        "DELETE FROM dose_events WHERE user_id=? AND medication_id=? AND date=?"
        f" AND status=? AND scheduled_time IN ({placeholders})",
        (user_id, medication_id, day, STATUS_UPCOMING, *timings),
    )
    return cur.rowcount


def get_daily_schedule(user_id: int, day: Optional[str] = None,
                       now: Optional[datetime] = None) -> list[dict]:
    """Return the user's dose timeline for ``day`` ordered by scheduled time.

    Each item is a dose event plus a ``medication`` snapshot. Slots of active
    medications that have no ledger row yet are created on the spot, so calling
    this repeatedly for the same day never produces duplicates.
    """
    now = now or _now_local()
    day = validate_day(day) if day else _today_str(now)
    stamp = _to_utc_storage(now)
    with get_db() as conn:
        medications = conn.execute(
            "SELECT * FROM medications WHERE user_id=? AND active=1 ORDER BY id",
            (user_id,),
        ).fetchall()
        existing = {
            (r["medication_id"], r["scheduled_time"]): r
            for r in conn.execute(
                "SELECT * FROM dose_events WHERE user_id=? AND date=?", (user_id, day)
            ).fetchall()
        }

        schedule = []
        created = 0
        for med_row in medications:
            med = medication_dict(med_row)
            for timing in med["timings"]:
                row = existing.get((med["id"], timing))
                if row is None:
                    cur = conn.execute(
                        _INSERT_SLOT_SQL,
                        (user_id, med["id"], day, timing,
                         initial_status(day, timing, now), stamp, stamp),
                    )
                    created += cur.rowcount
                    # A concurrent request may have won the insert; read back either way.
                    row = _get_slot(conn, user_id, med["id"], day, timing)
                item = dose_dict(row)
                item["medication"] = med
                schedule.append(item)
        conn.commit()

    if created:
        logger.debug("Materialized %d dose slots for user %s on %s", created, user_id, day)
    schedule.sort(key=lambda d: d["scheduled_time"])
    return schedule


# ── Dose actions ─────────────────────────────────────────────────────────────

def take_dose(user_id: int, medication_id: int, scheduled_time: str, day: str,
              now: Optional[datetime] = None) -> dict:
    """Mark a dose slot taken and draw one unit from the medication's stock.

    Taking is allowed from any prior status. The ledger write and the stock
    decrement share one transaction, and stock is drawn at most once per slot.
    """
    scheduled_time = validate_timing(scheduled_time)
    day = validate_day(day)
    now = now or _now_local()
    stamp = _to_utc_storage(now)
    with get_db() as conn:
        med = get_medication(conn, user_id, medication_id)
        _require_slot(conn, med, day, scheduled_time)
        try:
            conn.execute(
                "INSERT INTO dose_events"
                " (user_id, medication_id, date, scheduled_time, status, taken_at, created_at, updated_at)"
                " VALUES (?,?,?,?,'taken',?,?,?)"
                " ON CONFLICT(medication_id, date, scheduled_time) DO UPDATE SET"
                " status='taken', taken_at=excluded.taken_at, updated_at=excluded.updated_at",
                (user_id, medication_id, day, scheduled_time, stamp, stamp, stamp),
            )
            row = _get_slot(conn, user_id, medication_id, day, scheduled_time)
            if not row["stock_decremented"]:
                conn.execute(
                    "UPDATE medications SET remaining_stock = MAX(remaining_stock - 1, 0), updated_at=?"
                    " WHERE id=? AND user_id=?",
                    (stamp, medication_id, user_id),
                )
                conn.execute("UPDATE dose_events SET stock_decremented=1 WHERE id=?", (row["id"],))
            conn.commit()
        except Exception:
            conn.rollback()
            logger.exception(
                "Taking dose failed for medication %s on %s at %s", medication_id, day, scheduled_time
            )
            raise
        row = _get_slot(conn, user_id, medication_id, day, scheduled_time)
    return dose_dict(row)


def skip_dose(user_id: int, medication_id: int, scheduled_time: str, day: str,
              now: Optional[datetime] = None) -> dict:
    scheduled_time = validate_timing(scheduled_time)
    day = validate_day(day)
    stamp = _to_utc_storage(now)
    with get_db() as conn:
        med = get_medication(conn, user_id, medication_id)
        existing = _require_slot(conn, med, day, scheduled_time)
        if existing is not None and existing["status"] == STATUS_TAKEN:
            raise ValidationFailure("Dose already taken")
        conn.execute(
            "INSERT INTO dose_events"
            " (user_id, medication_id, date, scheduled_time, status, created_at, updated_at)"
            " VALUES (?,?,?,?,'skipped',?,?)"
            " ON CONFLICT(medication_id, date, scheduled_time) DO UPDATE SET"
            " status='skipped', updated_at=excluded.updated_at"
            " WHERE dose_events.status != 'taken'",
            (user_id, medication_id, day, scheduled_time, stamp, stamp),
        )
        conn.commit()
        row = _get_slot(conn, user_id, medication_id, day, scheduled_time)
    return dose_dict(row)

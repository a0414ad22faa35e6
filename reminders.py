"""Recurring background sweeps over the dose ledger.

Two independent jobs run on an APScheduler BackgroundScheduler:

* the reminder sweep, every minute, notifies owners of active medications
  scheduled for the current HH:MM unless that dose is already taken;
* the missed-dose sweep, every hour, retires today's ``upcoming`` slots whose
  time has passed.

Neither job keeps state between runs. A tick that fails is logged and the next
tick runs normally; ticks missed while the process was down are not replayed.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from config import _hhmm, _now_local, _to_utc_storage, _today_str
from db import get_db
from notifications import send_push_notification

logger = logging.getLogger(__name__)

_scheduler: Optional[BackgroundScheduler] = None


def reminder_payload(med, current_time: str) -> dict:
    return {
        "title": "Medicine Reminder",
        "body": f"Time to take {med['name']} ({med['dosage']})",
        "data": {
            "type": "medication_reminder",
            "medication_id": med["id"],
            "time": current_time,
        },
    }


def reminder_sweep(now: Optional[datetime] = None,
                   send: Callable[[int, dict], bool] = send_push_notification) -> int:
    """Dispatch reminders due at the current minute; return how many were sent."""
    now = now or _now_local()
    current_time = _hhmm(now)
    today = _today_str(now)
    with get_db() as conn:
        due = conn.execute(
            "SELECT m.id, m.user_id, m.name, m.dosage FROM medications m"
            " WHERE m.active=1"
            " AND EXISTS (SELECT 1 FROM json_each(m.timings) t WHERE t.value = ?)"
            " AND NOT EXISTS ("
            "   SELECT 1 FROM dose_events d"
            "   WHERE d.medication_id = m.id AND d.date = ? AND d.scheduled_time = ?"
            "   AND d.status = 'taken'"
            " )"
            " ORDER BY m.id",
            (current_time, today, current_time),
        ).fetchall()

    sent = 0
    for med in due:
        try:
            delivered = send(med["user_id"], reminder_payload(med, current_time))
        except Exception:
            logger.exception("Reminder dispatch failed for medication %s", med["id"])
            continue
        if delivered:
            sent += 1
    if due:
        logger.info("Reminder sweep %s %s: %d due, %d delivered", today, current_time, len(due), sent)
    return sent


def missed_dose_sweep(now: Optional[datetime] = None) -> int:
    """Mark today's past ``upcoming`` slots as ``missed``; return rows changed."""
    now = now or _now_local()
    with get_db() as conn:
        cur = conn.execute(
            "UPDATE dose_events SET status='missed', updated_at=?"
            " WHERE date=? AND status='upcoming' AND scheduled_time < ?",
            (_to_utc_storage(now), _today_str(now), _hhmm(now)),
        )
        conn.commit()
        changed = cur.rowcount
    if changed:
        logger.info("Missed-dose sweep marked %d doses missed", changed)
    return changed


def _run_reminder_sweep():
    try:
        reminder_sweep()
    except Exception:
        logger.exception("Reminder sweep failed")


def _run_missed_dose_sweep():
    try:
        missed_dose_sweep()
    except Exception:
        logger.exception("Missed-dose sweep failed")


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        _run_reminder_sweep, "cron", minute="*", second=0,
        id="reminder_sweep", replace_existing=True, max_instances=1, coalesce=True,
    )
    scheduler.add_job(
        _run_missed_dose_sweep, "cron", minute=0, second=0,
        id="missed_dose_sweep", replace_existing=True, max_instances=1, coalesce=True,
    )
    scheduler.start()
    _scheduler = scheduler
    logger.info("Medication reminder scheduler started")
    return scheduler


def shutdown_scheduler():
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Medication reminder scheduler stopped")
    _scheduler = None

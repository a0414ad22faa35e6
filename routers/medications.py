import json
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import _current_user_id, _now_local, _to_utc_storage, _today_str
from db import get_db
from dosing import (
    get_daily_schedule,
    get_medication,
    medication_dict,
    prune_upcoming,
    seed_doses,
    skip_dose,
    take_dose,
    validate_day,
    validate_timings,
)
from errors import NotFound

router = APIRouter()

MAX_MED_NAME_LEN = 120
MAX_DOSAGE_LEN = 80
MAX_INSTRUCTIONS_LEN = 1000


def _required_text(value: str, label: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{label} is required")
    return value


class MedicationCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(max_length=MAX_MED_NAME_LEN)
    dosage: str = Field(max_length=MAX_DOSAGE_LEN)
    timings: list[str]
    total_stock: int = Field(ge=0)
    remaining_stock: Optional[int] = Field(default=None, ge=0)
    instructions: str = Field(default="", max_length=MAX_INSTRUCTIONS_LEN)

    @field_validator("name")
    @classmethod
    def _name(cls, v):
        return _required_text(v, "Medicine name")

    @field_validator("dosage")
    @classmethod
    def _dosage(cls, v):
        return _required_text(v, "Dosage")

    @field_validator("timings")
    @classmethod
    def _timings(cls, v):
        return validate_timings(v)


class MedicationUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=MAX_MED_NAME_LEN)
    dosage: Optional[str] = Field(default=None, max_length=MAX_DOSAGE_LEN)
    timings: Optional[list[str]] = None
    total_stock: Optional[int] = Field(default=None, ge=0)
    remaining_stock: Optional[int] = Field(default=None, ge=0)
    instructions: Optional[str] = Field(default=None, max_length=MAX_INSTRUCTIONS_LEN)
    active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _name(cls, v):
        return None if v is None else _required_text(v, "Medicine name")

    @field_validator("dosage")
    @classmethod
    def _dosage(cls, v):
        return None if v is None else _required_text(v, "Dosage")

    @field_validator("timings")
    @classmethod
    def _timings(cls, v):
        return None if v is None else validate_timings(v)


class DoseAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    medication_id: int
    scheduled_time: str
    date: Optional[str] = None


# ── Schedule ─────────────────────────────────────────────────────────────────

@router.get("/api/medications/schedule/today")
def api_schedule_today():
    uid = _current_user_id.get()
    day = _today_str()
    return JSONResponse({"date": day, "schedule": get_daily_schedule(uid, day)})


@router.get("/api/medications/schedule")
def api_schedule(date: str = ""):
    uid = _current_user_id.get()
    day = validate_day(date) if date else _today_str()
    return JSONResponse({"date": day, "schedule": get_daily_schedule(uid, day)})


# ── Dose actions ─────────────────────────────────────────────────────────────

@router.post("/api/medications/dose/take")
def api_dose_take(payload: DoseAction):
    uid = _current_user_id.get()
    dose = take_dose(uid, payload.medication_id, payload.scheduled_time, payload.date or _today_str())
    return JSONResponse({"ok": True, "dose": dose})


@router.post("/api/medications/dose/skip")
def api_dose_skip(payload: DoseAction):
    uid = _current_user_id.get()
    dose = skip_dose(uid, payload.medication_id, payload.scheduled_time, payload.date or _today_str())
    return JSONResponse({"ok": True, "dose": dose})


# ── Medication CRUD ──────────────────────────────────────────────────────────

@router.get("/api/medications")
def api_medications():
    uid = _current_user_id.get()
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM medications WHERE user_id=? ORDER BY created_at DESC, id DESC", (uid,)
        ).fetchall()
    return JSONResponse({"medications": [medication_dict(r) for r in rows]})


@router.get("/api/medications/{med_id}")
def api_medication_get(med_id: int):
    uid = _current_user_id.get()
    with get_db() as conn:
        row = get_medication(conn, uid, med_id)
    return JSONResponse({"medication": medication_dict(row)})


@router.post("/api/medications")
def api_medication_create(payload: MedicationCreate):
    uid = _current_user_id.get()
    now = _now_local()
    stamp = _to_utc_storage(now)
    remaining = payload.total_stock if payload.remaining_stock is None else payload.remaining_stock
    remaining = min(remaining, payload.total_stock)
    with get_db() as conn:
        cur = conn.execute(
            "INSERT INTO medications"
            " (user_id, name, dosage, timings, instructions, total_stock, remaining_stock,"
            " active, created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?,1,?,?)",
            (uid, payload.name, payload.dosage, json.dumps(payload.timings),
             payload.instructions.strip(), payload.total_stock, remaining, stamp, stamp),
        )
        med_id = cur.lastrowid
        seed_doses(conn, uid, med_id, payload.timings, now=now)
        conn.commit()
        row = get_medication(conn, uid, med_id)
    return JSONResponse({"ok": True, "medication": medication_dict(row)}, status_code=201)


@router.put("/api/medications/{med_id}")
def api_medication_update(med_id: int, payload: MedicationUpdate):
    uid = _current_user_id.get()
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    with get_db() as conn:
        current = medication_dict(get_medication(conn, uid, med_id))
        merged = {**current, **changes}
        merged["remaining_stock"] = min(merged["remaining_stock"], merged["total_stock"])
        conn.execute(
            "UPDATE medications SET name=?, dosage=?, timings=?, instructions=?,"
            " total_stock=?, remaining_stock=?, active=?, updated_at=?"
            " WHERE id=? AND user_id=?",
            (merged["name"], merged["dosage"], json.dumps(merged["timings"]),
             merged["instructions"].strip(), merged["total_stock"], merged["remaining_stock"],
             int(merged["active"]), _to_utc_storage(), med_id, uid),
        )
        if "timings" in changes:
            now = _now_local()
            dropped = [t for t in current["timings"] if t not in merged["timings"]]
            prune_upcoming(conn, uid, med_id, dropped, day=_today_str(now))
            if merged["active"]:
                seed_doses(conn, uid, med_id, merged["timings"], now=now)
        conn.commit()
        row = get_medication(conn, uid, med_id)
    return JSONResponse({"ok": True, "medication": medication_dict(row)})


@router.delete("/api/medications/{med_id}")
def api_medication_delete(med_id: int):
    uid = _current_user_id.get()
    with get_db() as conn:
        cur = conn.execute("DELETE FROM medications WHERE id=? AND user_id=?", (med_id, uid))
        if cur.rowcount == 0:
            raise NotFound("Medication not found")
        conn.execute("DELETE FROM dose_events WHERE medication_id=? AND user_id=?", (med_id, uid))
        conn.commit()
    return JSONResponse({"ok": True})

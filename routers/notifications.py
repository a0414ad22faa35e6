import json
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

import config
from config import _current_user_id
from db import get_db

router = APIRouter()


class SubscribeIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subscription: dict
    notifications_enabled: Optional[bool] = None


@router.get("/api/notifications/vapid-key")
def vapid_key():
    return JSONResponse({"public_key": config.VAPID_PUBLIC_KEY})


@router.post("/api/notifications/subscribe")
def subscribe(payload: SubscribeIn):
    if not payload.subscription.get("endpoint"):
        return JSONResponse({"error": "Push subscription is required"}, status_code=400)
    uid = _current_user_id.get()
    with get_db() as conn:
        conn.execute(
            "UPDATE users SET push_subscription = ? WHERE id = ?",
            (json.dumps(payload.subscription), uid),
        )
        if payload.notifications_enabled is not None:
            conn.execute(
                "UPDATE users SET notifications_enabled = ? WHERE id = ?",
                (int(payload.notifications_enabled), uid),
            )
        conn.commit()
    return JSONResponse({"ok": True})


@router.post("/api/notifications/unsubscribe")
def unsubscribe():
    uid = _current_user_id.get()
    with get_db() as conn:
        conn.execute("UPDATE users SET push_subscription = NULL WHERE id = ?", (uid,))
        conn.commit()
    return JSONResponse({"ok": True})

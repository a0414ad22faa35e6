import json
import logging

import requests
from pywebpush import WebPushException, webpush

import config
from db import get_db

logger = logging.getLogger(__name__)


def push_enabled() -> bool:
    return bool(config.VAPID_PUBLIC_KEY and config.VAPID_PRIVATE_KEY)


def send_push_notification(user_id: int, payload: dict) -> bool:
    """Deliver ``payload`` ({title, body, data}) to the user's push subscription.

    Returns False without raising when push is unconfigured, the user has no
    subscription or has turned notifications off, or delivery fails. A
    subscription the push service reports as gone (404/410) is cleared.
    """
    if not push_enabled():
        logger.debug("Push not configured; skipping notification for user %s", user_id)
        return False
    with get_db() as conn:
        user = conn.execute(
            "SELECT push_subscription, notifications_enabled FROM users WHERE id=?", (user_id,)
        ).fetchone()
    if not user or not user["push_subscription"] or not user["notifications_enabled"]:
        return False

    try:
        webpush(
            subscription_info=json.loads(user["push_subscription"]),
            data=json.dumps(payload),
            vapid_private_key=config.VAPID_PRIVATE_KEY,
            vapid_claims={"sub": config.VAPID_EMAIL},
            timeout=config.PUSH_TIMEOUT_SECONDS,
        )
        return True
    except WebPushException as e:
        status = e.response.status_code if e.response is not None else None
        logger.warning("Push notification failed for user %s (status %s): %s", user_id, status, e)
        if status in (404, 410):
            with get_db() as conn:
                conn.execute("UPDATE users SET push_subscription=NULL WHERE id=?", (user_id,))
                conn.commit()
        return False
    except requests.exceptions.RequestException as e:
        logger.warning("Push service unreachable for user %s: %s", user_id, e)
        return False
    except ValueError:
        logger.exception("Stored push subscription for user %s is unusable", user_id)
        return False

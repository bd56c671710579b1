"""
ARTIS SALES - Push notifications (gateway HTTP)

Chaque notification est d'abord enregistrée dans `notifications`, clé
{event_id}:{user_id} → rejouer un event ne crée jamais de doublon.
L'envoi HTTP porte la même clé en Idempotency-Key.
Réponse non-2xx / timeout → exception → le dispatcher retente l'event.
"""

import logging
from typing import Dict, Any, Optional

import httpx

import config
from config import db, now_iso

logger = logging.getLogger("notifier")

PUSH_TIMEOUT = 10.0


class PushDeliveryError(Exception):
    pass


def _gateway_headers(notification_id: str) -> Dict[str, str]:
    headers = {"Content-Type": "application/json", "Idempotency-Key": notification_id}
    if config.PUSH_GATEWAY_KEY:
        headers["Authorization"] = f"Bearer {config.PUSH_GATEWAY_KEY}"
    return headers


async def send_push(
    event_id: str,
    user: Dict[str, Any],
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Notifie un utilisateur. Returns True si envoyé (ou déjà envoyé).
    """
    user_id = user.get("id")
    notification_id = f"{event_id}:{user_id}"

    existing = await db.notifications.find_one({"id": notification_id}, {"_id": 0})
    if existing and existing.get("sent_at"):
        logger.info(f"Notification {notification_id} already sent, skipping")
        return True

    await db.notifications.update_one(
        {"id": notification_id},
        {
            "$setOnInsert": {
                "id": notification_id,
                "event_id": event_id,
                "user_id": user_id,
                "title": title,
                "body": body,
                "data": data or {},
                "created_at": now_iso(),
                "sent_at": None,
            }
        },
        upsert=True,
    )

    if not config.PUSH_GATEWAY_URL:
        logger.info(f"PUSH_GATEWAY_URL not configured, notification {notification_id} stored only")
        return False

    token = user.get("push_token")
    if not token:
        logger.info(f"User {user_id} has no push token, notification {notification_id} stored only")
        return False

    try:
        async with httpx.AsyncClient(timeout=PUSH_TIMEOUT) as http_client:
            response = await http_client.post(
                config.PUSH_GATEWAY_URL,
                json={
                    "token": token,
                    "title": title,
                    "body": body,
                    "data": {**(data or {}), "notification_id": notification_id},
                },
                headers=_gateway_headers(notification_id),
            )
    except httpx.TimeoutException:
        raise PushDeliveryError(f"Push gateway timeout for {notification_id}")
    except httpx.RequestError as e:
        raise PushDeliveryError(f"Push gateway unreachable for {notification_id}: {e}")

    if response.status_code >= 300:
        raise PushDeliveryError(
            f"Push gateway returned {response.status_code} for {notification_id}: {response.text[:200]}"
        )

    await db.notifications.update_one(
        {"id": notification_id},
        {"$set": {"sent_at": now_iso(), "gateway_status": response.status_code}},
    )
    logger.info(f"Push sent to {user_id}: {title}")
    return True

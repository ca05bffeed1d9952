"""
Real-time alert events over Redis pub/sub.

Channel: ``alerts:{organization_id}``. Message shape:
  {"type": "alert" | "escalation", "payload": {...}}
"""

import json
from typing import Any

import redis.asyncio as aioredis

from core.config import get_settings


def alert_event(alert: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "alert",
        "payload": {
            "alert_id": alert["alert_id"],
            "store_id": alert["store_id"],
            "severity": alert["severity"],
            "escalation_level": alert["escalation_level"],
            "title": alert["title"],
            "alert_date": alert["alert_date"],
        },
    }


def escalation_event(escalation: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "escalation",
        "payload": {
            "escalation_id": escalation["escalation_id"],
            "alert_id": escalation["alert_id"],
            "store_id": escalation["store_id"],
            "from_level": escalation["from_level"],
            "to_level": escalation["to_level"],
            "escalated_to_role": escalation["escalated_to_role"],
            "escalated_at": escalation["escalated_at"],
        },
    }


async def publish_events(organization_id: str, events: list[dict[str, Any]]) -> int:
    """
    Publish events for one organization.
    Returns number of subscribers notified.
    """
    if not events:
        return 0

    settings = get_settings()
    redis = aioredis.from_url(settings.redis_url)
    try:
        total_subs = 0
        channel = f"alerts:{organization_id}"
        for event in events:
            total_subs += await redis.publish(channel, json.dumps(event))
        return total_subs
    finally:
        await redis.aclose()

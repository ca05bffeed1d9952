"""
Voice Call Provider — places outbound automated calls.

The dispatcher only needs ``place_call(to_phone, context) -> provider_call_id``.
HttpVoiceProvider talks to a Vapi-style REST API (``POST /call/phone``);
status, speech and function-call events come back through webhooks handled
by voice.dispatcher.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.errors import ConfigurationError, ExternalProviderError

logger = structlog.get_logger()


@dataclass
class CallContext:
    """What the automated caller knows about the issue it is calling about."""

    ai_call_id: str
    recipient_name: str | None
    store_name: str
    store_code: str
    kpi_name: str
    severity: str
    variance_pct: float
    alert_title: str
    escalation_level: int
    extra: dict[str, Any] = field(default_factory=dict)

    def first_message(self) -> str:
        greeting = f"Hi {self.recipient_name}" if self.recipient_name else "Hello"
        return (
            f"{greeting}, this is the store health assistant calling about {self.store_name}. "
            f"{self.kpi_name} is {abs(self.variance_pct):.1f}% "
            f"{'below' if self.variance_pct < 0 else 'above'} target and has been escalated "
            f"to level {self.escalation_level}. Can you acknowledge this issue?"
        )


class VoiceCallProvider(ABC):
    name = "voice"

    @abstractmethod
    async def place_call(self, to_phone: str, context: CallContext) -> str:
        """Start a call and return the provider's call id. Raises ExternalProviderError."""
        ...


class HttpVoiceProvider(VoiceCallProvider):
    name = "vapi"

    def __init__(self, base_url: str, api_key: str, phone_number_id: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, to_phone: str, context: CallContext) -> dict[str, Any]:
        return {
            "phoneNumberId": self.phone_number_id,
            "customer": {"number": to_phone, "name": context.recipient_name or "Store Manager"},
            "assistant": {
                "firstMessage": context.first_message(),
                "metadata": {
                    "storeName": context.store_name,
                    "storeCode": context.store_code,
                    "kpiName": context.kpi_name,
                    "severity": context.severity,
                    "variancePct": round(context.variance_pct, 1),
                    "alertTitle": context.alert_title,
                    "escalationLevel": context.escalation_level,
                    **context.extra,
                },
            },
            "metadata": {"aiCallId": context.ai_call_id},
        }

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def _post_call(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(f"{self.base_url}/call/phone", headers=self.headers, json=payload)
            response.raise_for_status()
            return response.json()

    async def place_call(self, to_phone: str, context: CallContext) -> str:
        try:
            body = await self._post_call(self.build_payload(to_phone, context))
        except httpx.HTTPStatusError as exc:
            raise ExternalProviderError(
                self.name,
                f"call request rejected with status {exc.response.status_code}",
                {"body": exc.response.text[:500]},
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalProviderError(self.name, f"call request failed: {exc}") from exc

        provider_call_id = body.get("id")
        if not provider_call_id:
            raise ExternalProviderError(self.name, "provider response did not include a call id")
        logger.info("voice.call_placed", ai_call_id=context.ai_call_id, provider_call_id=provider_call_id)
        return str(provider_call_id)


def build_voice_provider() -> VoiceCallProvider:
    settings = get_settings()
    if not settings.voice_enabled:
        raise ConfigurationError("Voice calls are disabled (VOICE_ENABLED=false)")
    if not settings.voice_provider_api_key:
        raise ConfigurationError("VOICE_PROVIDER_API_KEY is not configured")
    return HttpVoiceProvider(
        base_url=settings.voice_provider_url,
        api_key=settings.voice_provider_api_key,
        phone_number_id=settings.voice_phone_number_id,
        timeout=settings.voice_timeout_seconds,
    )

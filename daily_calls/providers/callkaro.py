"""
CallKaro adapter.

POST {base}/call/outbound with an X-API-KEY header; webhooks post the call
status with our metadata echoed back.
"""

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from daily_calls.config import settings
from daily_calls.infrastructure.observability.logging import get_logger, mask_phone
from daily_calls.providers.base import (
    CallStatus,
    CallWebhookPayload,
    InitiateCallRequest,
    InitiateCallResponse,
    InvalidWebhookPayload,
)
from daily_calls.providers.http import HttpCallProvider

logger = get_logger(__name__)


class CallKaroWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    call_id: str | None = None
    status: str
    metadata: dict[str, Any] | None = None
    transcript: str | None = None
    recording_url: str | None = None
    duration: float | None = None
    timestamp: str | None = None


def _normalize_status(raw: str) -> CallStatus:
    try:
        return CallStatus(raw.strip().lower().replace("-", "_"))
    except ValueError as e:
        raise InvalidWebhookPayload(f"Unknown CallKaro status '{raw}'", provider="CallKaro") from e


class CallKaroProvider(HttpCallProvider):
    name = "CallKaro"
    requires_agent_id = True
    signature_header = "x-callkaro-signature"

    def __init__(
        self,
        api_key: str | None = None,
        agent_id: str | None = None,
        base_url: str | None = None,
        webhook_secret: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            base_url=base_url or settings.CALLKARO_BASE_URL,
            timeout_s=timeout_s or settings.PROVIDER_TIMEOUT_SECONDS,
            webhook_secret=webhook_secret,
            transport=transport,
        )
        self.api_key = api_key or ""
        self.agent_id = agent_id

        if not self.api_key:
            logger.warning("CALLKARO_API_KEY not set")

    @property
    def default_agent_id(self) -> str | None:
        return self.agent_id

    async def initiate_call(self, request: InitiateCallRequest) -> InitiateCallResponse:
        response = await self._post(
            "/call/outbound",
            {
                "to_number": request.to_number,
                "agent_id": request.agent_id or self.agent_id,
                "metadata": request.metadata.model_dump(exclude_none=True),
            },
            headers={"X-API-KEY": self.api_key},
        )

        if response.is_error:
            logger.error(
                "CallKaro API error",
                status_code=response.status_code,
                body=response.text[:500],
                to_number=mask_phone(request.to_number),
            )
            return InitiateCallResponse(
                success=False,
                call_id=request.metadata.call_id,
                error=f"CallKaro API error: {response.status_code} - {response.text}",
            )

        data = self._json_body(response)
        return InitiateCallResponse(
            success=True,
            call_id=request.metadata.call_id,
            vendor_call_id=data.get("call_id"),
            status=data.get("status"),
            message=data.get("message"),
        )

    def parse_webhook(self, raw: Any) -> CallWebhookPayload:
        if not isinstance(raw, dict):
            raise InvalidWebhookPayload("CallKaro webhook body must be a JSON object", provider=self.name)

        try:
            webhook = CallKaroWebhook.model_validate(raw)
            fields: dict[str, Any] = {
                "vendor_call_id": webhook.call_id,
                "status": _normalize_status(webhook.status),
                "metadata": webhook.metadata,
                "transcript": webhook.transcript,
                "recording_url": webhook.recording_url,
                "duration": webhook.duration,
            }
            if webhook.timestamp:
                fields["timestamp"] = webhook.timestamp
            return CallWebhookPayload.model_validate(fields)
        except ValidationError as e:
            raise InvalidWebhookPayload(f"Invalid CallKaro webhook: {e}", provider=self.name) from e

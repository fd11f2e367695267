"""
Vapi adapter.

Calls go to POST {base}/call/phone with Bearer auth. Vapi reports its own
status vocabulary, mapped onto CallStatus below.
"""

from datetime import datetime
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

VAPI_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.RINGING,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "forwarding": CallStatus.IN_PROGRESS,
    "ended": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
    "busy": CallStatus.BUSY,
    "no-answer": CallStatus.NO_ANSWER,
}


class VapiCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None


class VapiTranscript(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str | None = None


class VapiMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str | None = None


class VapiWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    call: VapiCall | None = None
    status: str
    metadata: dict[str, Any] | None = None
    transcript: VapiTranscript | str | None = None
    messages: list[VapiMessage] | None = None
    recordingUrl: str | None = None
    startedAt: datetime | None = None
    endedAt: datetime | None = None
    createdAt: str | None = None


def _transcript(webhook: VapiWebhook) -> str | None:
    if isinstance(webhook.transcript, str):
        return webhook.transcript
    if webhook.transcript and webhook.transcript.text:
        return webhook.transcript.text
    if webhook.messages:
        return "\n".join(m.content for m in webhook.messages if m.content)
    return None


def _duration(webhook: VapiWebhook) -> float | None:
    if webhook.startedAt and webhook.endedAt:
        return max((webhook.endedAt - webhook.startedAt).total_seconds(), 0.0)
    return None


class VapiProvider(HttpCallProvider):
    name = "Vapi"
    requires_agent_id = False
    signature_header = "x-vapi-signature"

    def __init__(
        self,
        api_key: str | None = None,
        assistant_id: str | None = None,
        phone_number_id: str | None = None,
        base_url: str | None = None,
        webhook_secret: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            base_url=base_url or settings.VAPI_BASE_URL,
            timeout_s=timeout_s or settings.PROVIDER_TIMEOUT_SECONDS,
            webhook_secret=webhook_secret,
            transport=transport,
        )
        self.api_key = api_key or ""
        self.assistant_id = assistant_id
        self.phone_number_id = phone_number_id

        if not self.api_key:
            logger.warning("VAPI_API_KEY not set")

    @property
    def default_agent_id(self) -> str | None:
        return self.assistant_id

    async def initiate_call(self, request: InitiateCallRequest) -> InitiateCallResponse:
        payload = {
            "assistantId": request.agent_id or self.assistant_id,
            "phoneNumberId": self.phone_number_id,
            "customer": {"number": request.to_number},
            "metadata": request.metadata.model_dump(exclude_none=True),
        }
        response = await self._post(
            "/call/phone",
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        if response.is_error:
            logger.error(
                "Vapi API error",
                status_code=response.status_code,
                body=response.text[:500],
                to_number=mask_phone(request.to_number),
            )
            return InitiateCallResponse(
                success=False,
                call_id=request.metadata.call_id,
                error=f"Vapi API error: {response.status_code} - {response.text}",
            )

        data = self._json_body(response)
        return InitiateCallResponse(
            success=True,
            call_id=request.metadata.call_id,
            vendor_call_id=data.get("id"),
            status=data.get("status"),
            message="Call initiated successfully",
        )

    def parse_webhook(self, raw: Any) -> CallWebhookPayload:
        if not isinstance(raw, dict):
            raise InvalidWebhookPayload("Vapi webhook body must be a JSON object", provider=self.name)

        # Server messages wrap the call in a "message" envelope
        body = raw.get("message") if isinstance(raw.get("message"), dict) else raw

        try:
            webhook = VapiWebhook.model_validate(body)
        except ValidationError as e:
            raise InvalidWebhookPayload(f"Invalid Vapi webhook: {e}", provider=self.name) from e

        status = VAPI_STATUS_MAP.get(webhook.status)
        if status is None:
            raise InvalidWebhookPayload(f"Unknown Vapi status '{webhook.status}'", provider=self.name)

        fields: dict[str, Any] = {
            "vendor_call_id": (webhook.call.id if webhook.call else None) or webhook.id,
            "status": status,
            "metadata": webhook.metadata,
            "transcript": _transcript(webhook),
            "recording_url": webhook.recordingUrl,
            "duration": _duration(webhook),
        }
        if webhook.createdAt:
            fields["timestamp"] = webhook.createdAt

        try:
            return CallWebhookPayload.model_validate(fields)
        except ValidationError as e:
            raise InvalidWebhookPayload(f"Invalid Vapi webhook: {e}", provider=self.name) from e

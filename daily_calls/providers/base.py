"""
Call provider interface.

Every vendor adapter normalizes its request, response and webhook shapes into
the models below. Adapters hold no state beyond their HTTP client.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CallStatus(str, Enum):
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"


# Statuses that end a call without the user having talked to the agent
UNANSWERED_STATUSES = frozenset({CallStatus.FAILED, CallStatus.NO_ANSWER, CallStatus.BUSY})


class ProviderInitiationFailed(Exception):
    """
    The vendor rejected the call or the request did not complete.

    ``ambiguous`` is True when the request may have reached the vendor
    (timeouts, dropped connections), so a call might have been placed.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        ambiguous: bool = False,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.provider = provider
        self.ambiguous = ambiguous
        self.recoverable = recoverable


class InvalidWebhookPayload(Exception):
    """Vendor callback could not be parsed into a CallWebhookPayload."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class CallMetadata(BaseModel):
    """Correlation data sent with a call and echoed back in webhooks."""

    model_config = ConfigDict(extra="allow")

    call_id: str
    user_id: str
    name: str | None = None


class InitiateCallRequest(BaseModel):
    to_number: str
    agent_id: str | None = None
    metadata: CallMetadata


class InitiateCallResponse(BaseModel):
    success: bool
    call_id: str | None = None
    vendor_call_id: str | None = None
    status: str | None = None
    message: str | None = None
    error: str | None = None


class WebhookMetadata(BaseModel):
    """Metadata echoed by the vendor; every field is optional on the way back."""

    model_config = ConfigDict(extra="allow")

    call_id: str | None = None
    user_id: str | None = None
    name: str | None = None


class CallWebhookPayload(BaseModel):
    vendor_call_id: str | None = None
    status: CallStatus
    metadata: WebhookMetadata | None = None
    transcript: str | None = None
    recording_url: str | None = None
    duration: float | None = Field(default=None, ge=0)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @model_validator(mode="after")
    def _require_correlation_key(self) -> "CallWebhookPayload":
        if not self.vendor_call_id and not (self.metadata and self.metadata.call_id):
            raise ValueError("webhook carries neither a vendor call id nor metadata.call_id")
        return self

    @property
    def call_id(self) -> str | None:
        return self.metadata.call_id if self.metadata else None


class CallProvider(ABC):
    """Strategy for one call vendor."""

    name: str = "base"
    requires_agent_id: bool = False
    signature_header: str | None = None

    def __init__(self, webhook_secret: str | None = None):
        self.webhook_secret = webhook_secret

    @property
    def default_agent_id(self) -> str | None:
        return None

    @abstractmethod
    async def initiate_call(self, request: InitiateCallRequest) -> InitiateCallResponse:
        """
        Ask the vendor to place a call.

        Returns ``success=False`` when the vendor answers with an error.

        Raises:
            ProviderInitiationFailed: the request itself failed
        """

    @abstractmethod
    def parse_webhook(self, raw: Any) -> CallWebhookPayload:
        """
        Validate a vendor callback and normalize it.

        Unknown extra fields are ignored; unknown statuses are rejected.

        Raises:
            InvalidWebhookPayload: structurally malformed payload or unknown status
        """

    @property
    def supports_signature_verification(self) -> bool:
        return bool(self.webhook_secret)

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> bool:
        """HMAC-SHA256 hex digest of the raw body, compared in constant time."""
        if not self.supports_signature_verification:
            raise NotImplementedError(f"{self.name} does not verify webhook signatures")
        if not signature:
            return False
        expected = hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip())

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
        return None

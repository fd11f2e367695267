"""
In-process provider for local development and tests. Never places a call.
"""

from typing import Any

from pydantic import ValidationError

from daily_calls.providers.base import (
    CallProvider,
    CallWebhookPayload,
    InitiateCallRequest,
    InitiateCallResponse,
    InvalidWebhookPayload,
    ProviderInitiationFailed,
)


class MockCallProvider(CallProvider):
    """
    Records every request and answers with scripted outcomes.

    ``outcomes`` is consumed in order: ``True`` succeeds, ``False`` returns
    ``success=False``, an exception instance is raised. Once exhausted every
    call succeeds.
    """

    name = "Mock"
    requires_agent_id = False
    signature_header = "x-mock-signature"

    def __init__(
        self,
        outcomes: list[bool | Exception] | None = None,
        agent_id: str | None = "mock-agent",
        webhook_secret: str | None = None,
    ):
        super().__init__(webhook_secret=webhook_secret)
        self.outcomes = list(outcomes or [])
        self.agent_id = agent_id
        self.requests: list[InitiateCallRequest] = []

    @property
    def default_agent_id(self) -> str | None:
        return self.agent_id

    @property
    def calls_placed(self) -> int:
        return len(self.requests)

    async def initiate_call(self, request: InitiateCallRequest) -> InitiateCallResponse:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else True

        if isinstance(outcome, Exception):
            raise outcome
        if outcome is False:
            return InitiateCallResponse(
                success=False,
                call_id=request.metadata.call_id,
                error="Mock provider scripted failure",
            )
        return InitiateCallResponse(
            success=True,
            call_id=request.metadata.call_id,
            vendor_call_id=f"mock-{len(self.requests):06d}",
            status="queued",
            message="Mock call queued",
        )

    def parse_webhook(self, raw: Any) -> CallWebhookPayload:
        if not isinstance(raw, dict):
            raise InvalidWebhookPayload("Mock webhook body must be a JSON object", provider=self.name)
        try:
            return CallWebhookPayload.model_validate(raw)
        except ValidationError as e:
            raise InvalidWebhookPayload(f"Invalid mock webhook: {e}", provider=self.name) from e


def scripted_failure(message: str = "mock transport failure", ambiguous: bool = False) -> ProviderInitiationFailed:
    """Exception outcome for MockCallProvider scripts."""
    return ProviderInitiationFailed(message, provider=MockCallProvider.name, ambiguous=ambiguous)

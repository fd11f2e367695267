"""
Tests for the CallKaro, Vapi and mock call providers.
"""

import hashlib
import hmac
import json

import httpx
import pytest

from daily_calls.providers.base import (
    CallMetadata,
    CallStatus,
    InitiateCallRequest,
    InvalidWebhookPayload,
    ProviderInitiationFailed,
)
from daily_calls.providers.callkaro import CallKaroProvider
from daily_calls.providers.mock import MockCallProvider, scripted_failure
from daily_calls.providers.vapi import VapiProvider


def _request(agent_id="agent-1"):
    return InitiateCallRequest(
        to_number="+919876543210",
        agent_id=agent_id,
        metadata=CallMetadata(call_id="call-1", user_id="user-1", name="Asha"),
    )


def _callkaro(handler, **kwargs):
    return CallKaroProvider(
        api_key="ck-key",
        agent_id="agent-1",
        base_url="https://api.callkaro.test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _vapi(handler):
    return VapiProvider(
        api_key="vapi-key",
        assistant_id="assistant-1",
        phone_number_id="phone-1",
        base_url="https://api.vapi.test",
        transport=httpx.MockTransport(handler),
    )


class TestCallKaroInitiate:
    @pytest.mark.asyncio
    async def test_success_maps_vendor_call_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["api_key"] = request.headers.get("X-API-KEY")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"call_id": "ck-123", "status": "queued", "message": "ok"})

        provider = _callkaro(handler)
        response = await provider.initiate_call(_request())
        await provider.aclose()

        assert response.success is True
        assert response.vendor_call_id == "ck-123"
        assert response.call_id == "call-1"
        assert seen["path"] == "/call/outbound"
        assert seen["api_key"] == "ck-key"
        assert seen["body"]["to_number"] == "+919876543210"
        assert seen["body"]["agent_id"] == "agent-1"
        assert seen["body"]["metadata"] == {"call_id": "call-1", "user_id": "user-1", "name": "Asha"}

    @pytest.mark.asyncio
    async def test_vendor_error_returns_unsuccessful_response(self):
        provider = _callkaro(lambda request: httpx.Response(500, text="internal error"))

        response = await provider.initiate_call(_request())
        await provider.aclose()

        assert response.success is False
        assert "500" in response.error

    @pytest.mark.asyncio
    async def test_connection_refused_is_not_ambiguous(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = _callkaro(handler)
        with pytest.raises(ProviderInitiationFailed) as exc_info:
            await provider.initiate_call(_request())
        await provider.aclose()

        assert exc_info.value.ambiguous is False

    @pytest.mark.asyncio
    async def test_timeout_is_ambiguous(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = _callkaro(handler)
        with pytest.raises(ProviderInitiationFailed) as exc_info:
            await provider.initiate_call(_request())
        await provider.aclose()

        assert exc_info.value.ambiguous is True

    @pytest.mark.asyncio
    async def test_accepted_call_with_non_json_body(self):
        provider = _callkaro(lambda request: httpx.Response(200, text="Accepted"))

        response = await provider.initiate_call(_request())
        await provider.aclose()

        assert response.success is True
        assert response.vendor_call_id is None
        assert response.call_id == "call-1"

    @pytest.mark.asyncio
    async def test_accepted_call_with_list_body(self):
        provider = _callkaro(lambda request: httpx.Response(200, json=["ck-123"]))

        response = await provider.initiate_call(_request())
        await provider.aclose()

        assert response.success is True
        assert response.vendor_call_id is None


class TestCallKaroWebhook:
    def test_in_progress_status_preserved(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        payload = provider.parse_webhook(
            {"call_id": "ck-1", "status": "in_progress", "metadata": {"call_id": "call-1"}}
        )

        assert payload.status == CallStatus.IN_PROGRESS
        assert payload.vendor_call_id == "ck-1"
        assert payload.call_id == "call-1"

    def test_hyphenated_status_normalized(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        payload = provider.parse_webhook({"call_id": "ck-1", "status": "no-answer"})

        assert payload.status == CallStatus.NO_ANSWER

    def test_unknown_status_rejected(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        with pytest.raises(InvalidWebhookPayload):
            provider.parse_webhook({"call_id": "ck-1", "status": "unknown_status"})

    def test_extra_fields_ignored(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        payload = provider.parse_webhook(
            {
                "call_id": "ck-1",
                "status": "completed",
                "transcript": "Hello",
                "duration": 42,
                "sentiment": "positive",
            }
        )

        assert payload.status == CallStatus.COMPLETED
        assert payload.transcript == "Hello"
        assert payload.duration == 42

    def test_missing_status_rejected(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        with pytest.raises(InvalidWebhookPayload):
            provider.parse_webhook({"call_id": "ck-1"})

    def test_payload_without_any_call_id_rejected(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        with pytest.raises(InvalidWebhookPayload):
            provider.parse_webhook({"status": "completed"})

    def test_metadata_call_id_alone_is_enough(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        payload = provider.parse_webhook({"status": "busy", "metadata": {"call_id": "call-9"}})

        assert payload.vendor_call_id is None
        assert payload.call_id == "call-9"

    def test_non_object_body_rejected(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        with pytest.raises(InvalidWebhookPayload):
            provider.parse_webhook(["completed"])


class TestVapi:
    @pytest.mark.asyncio
    async def test_initiate_uses_bearer_auth_and_phone_endpoint(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "vapi-call-1", "status": "queued"})

        provider = _vapi(handler)
        response = await provider.initiate_call(_request(agent_id=None))
        await provider.aclose()

        assert response.success is True
        assert response.vendor_call_id == "vapi-call-1"
        assert seen["path"] == "/call/phone"
        assert seen["auth"] == "Bearer vapi-key"
        assert seen["body"]["assistantId"] == "assistant-1"
        assert seen["body"]["phoneNumberId"] == "phone-1"
        assert seen["body"]["customer"] == {"number": "+919876543210"}

    @pytest.mark.asyncio
    async def test_initiate_with_empty_body(self):
        provider = _vapi(lambda request: httpx.Response(201, content=b""))

        response = await provider.initiate_call(_request(agent_id=None))
        await provider.aclose()

        assert response.success is True
        assert response.vendor_call_id is None
        assert response.status is None

    def test_ended_call_maps_to_completed_with_duration(self):
        provider = VapiProvider(api_key="k")

        payload = provider.parse_webhook(
            {
                "message": {
                    "call": {"id": "vapi-call-1"},
                    "status": "ended",
                    "metadata": {"call_id": "call-1"},
                    "messages": [{"content": "Hi"}, {"content": "Bye"}],
                    "startedAt": "2024-05-01T10:00:00Z",
                    "endedAt": "2024-05-01T10:01:30Z",
                }
            }
        )

        assert payload.status == CallStatus.COMPLETED
        assert payload.vendor_call_id == "vapi-call-1"
        assert payload.duration == 90
        assert payload.transcript == "Hi\nBye"

    def test_no_answer_status(self):
        provider = VapiProvider(api_key="k")

        payload = provider.parse_webhook({"id": "vapi-call-1", "status": "no-answer"})

        assert payload.status == CallStatus.NO_ANSWER

    def test_unknown_vapi_status_rejected(self):
        provider = VapiProvider(api_key="k")

        with pytest.raises(InvalidWebhookPayload):
            provider.parse_webhook({"id": "vapi-call-1", "status": "teleported"})


class TestSignatures:
    def test_valid_signature_accepted(self):
        provider = CallKaroProvider(api_key="k", agent_id="a", webhook_secret="shh")
        body = b'{"call_id":"ck-1","status":"completed"}'
        signature = hmac.new(b"shh", body, hashlib.sha256).hexdigest()

        assert provider.verify_webhook_signature(body, signature) is True

    def test_tampered_body_rejected(self):
        provider = CallKaroProvider(api_key="k", agent_id="a", webhook_secret="shh")
        signature = hmac.new(b"shh", b"original", hashlib.sha256).hexdigest()

        assert provider.verify_webhook_signature(b"tampered", signature) is False

    def test_missing_signature_rejected(self):
        provider = CallKaroProvider(api_key="k", agent_id="a", webhook_secret="shh")

        assert provider.verify_webhook_signature(b"{}", None) is False

    def test_provider_without_secret_cannot_verify(self):
        provider = CallKaroProvider(api_key="k", agent_id="a")

        assert provider.supports_signature_verification is False
        with pytest.raises(NotImplementedError):
            provider.verify_webhook_signature(b"{}", "sig")


class TestMockProvider:
    @pytest.mark.asyncio
    async def test_scripted_outcomes_in_order(self):
        provider = MockCallProvider(outcomes=[False, scripted_failure(ambiguous=True), True])

        first = await provider.initiate_call(_request())
        with pytest.raises(ProviderInitiationFailed):
            await provider.initiate_call(_request())
        third = await provider.initiate_call(_request())

        assert first.success is False
        assert third.success is True
        assert third.vendor_call_id == "mock-000003"
        assert provider.calls_placed == 3

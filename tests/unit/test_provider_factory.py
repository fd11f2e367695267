import pytest

from daily_calls.config import Settings
from daily_calls.providers import factory
from daily_calls.providers.callkaro import CallKaroProvider
from daily_calls.providers.mock import MockCallProvider
from daily_calls.providers.vapi import VapiProvider


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_callkaro_is_default():
    provider = factory.create_call_provider(_settings(CALLKARO_API_KEY="k", CALLKARO_AGENT_ID="a"))

    assert isinstance(provider, CallKaroProvider)
    assert provider.default_agent_id == "a"


def test_vapi_selected_case_insensitively():
    provider = factory.create_call_provider(_settings(CALL_PROVIDER=" Vapi ", VAPI_ASSISTANT_ID="asst"))

    assert isinstance(provider, VapiProvider)
    assert provider.default_agent_id == "asst"


def test_mock_provider_available():
    assert isinstance(factory.create_call_provider(_settings(CALL_PROVIDER="mock")), MockCallProvider)


def test_unknown_provider_rejected():
    with pytest.raises(ValueError):
        factory.create_call_provider(_settings(CALL_PROVIDER="twilio"))


def test_webhook_secret_enables_signature_checks():
    provider = factory.create_call_provider(_settings(CALLKARO_WEBHOOK_SECRET="shh"))

    assert provider.supports_signature_verification is True


def test_validate_reports_missing_credentials():
    result = factory.validate_call_provider_config(_settings(CALL_PROVIDER="vapi", VAPI_API_KEY="k"))

    assert result["valid"] is False
    assert result["provider"] == "vapi"
    assert result["missing"] == ["VAPI_ASSISTANT_ID", "VAPI_PHONE_NUMBER_ID"]


def test_validate_complete_callkaro_config():
    result = factory.validate_call_provider_config(
        _settings(CALLKARO_API_KEY="k", CALLKARO_AGENT_ID="a")
    )

    assert result == {"valid": True, "provider": "callkaro", "missing": []}


def test_validate_unsupported_provider():
    result = factory.validate_call_provider_config(_settings(CALL_PROVIDER="twilio"))

    assert result["valid"] is False


@pytest.mark.asyncio
async def test_process_provider_can_be_replaced_and_closed():
    mock = MockCallProvider()
    factory.set_call_provider(mock)

    assert factory.get_call_provider() is mock

    await factory.close_call_provider()
    factory.set_call_provider(None)

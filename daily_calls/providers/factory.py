"""
Call provider selection.

The provider is chosen once per process from CALL_PROVIDER and shared by the
dispatch job and the webhook route.
"""

from daily_calls.config import Settings, settings
from daily_calls.infrastructure.observability.logging import get_logger
from daily_calls.providers.base import CallProvider
from daily_calls.providers.callkaro import CallKaroProvider
from daily_calls.providers.mock import MockCallProvider
from daily_calls.providers.vapi import VapiProvider

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("callkaro", "vapi", "mock")

_provider: CallProvider | None = None


def create_call_provider(config: Settings | None = None) -> CallProvider:
    """Build a provider from settings. Raises ValueError on an unknown name."""
    cfg = config or settings
    provider_type = (cfg.CALL_PROVIDER or "callkaro").strip().lower()

    if provider_type == "callkaro":
        return CallKaroProvider(
            api_key=cfg.CALLKARO_API_KEY,
            agent_id=cfg.CALLKARO_AGENT_ID,
            base_url=cfg.CALLKARO_BASE_URL,
            webhook_secret=cfg.CALLKARO_WEBHOOK_SECRET,
            timeout_s=cfg.PROVIDER_TIMEOUT_SECONDS,
        )

    if provider_type == "vapi":
        return VapiProvider(
            api_key=cfg.VAPI_API_KEY,
            assistant_id=cfg.VAPI_ASSISTANT_ID,
            phone_number_id=cfg.VAPI_PHONE_NUMBER_ID,
            base_url=cfg.VAPI_BASE_URL,
            webhook_secret=cfg.VAPI_WEBHOOK_SECRET,
            timeout_s=cfg.PROVIDER_TIMEOUT_SECONDS,
        )

    if provider_type == "mock":
        return MockCallProvider()

    raise ValueError(
        f"Unsupported call provider '{provider_type}'. "
        f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
    )


def get_call_provider() -> CallProvider:
    """Process-wide provider, created on first use."""
    global _provider
    if _provider is None:
        _provider = create_call_provider()
        logger.info(
            "Call provider selected",
            provider=_provider.name,
            signature_verification=_provider.supports_signature_verification,
        )
    return _provider


def set_call_provider(provider: CallProvider | None) -> None:
    """Replace the process-wide provider (startup wiring and tests)."""
    global _provider
    _provider = provider


async def close_call_provider() -> None:
    global _provider
    if _provider is not None:
        await _provider.aclose()
    _provider = None


def validate_call_provider_config(config: Settings | None = None) -> dict:
    """
    Check that the selected provider has the credentials it needs.

    Returns:
        Dict with ``valid``, ``provider`` and a list of ``missing`` settings
    """
    cfg = config or settings
    provider_type = (cfg.CALL_PROVIDER or "callkaro").strip().lower()
    missing: list[str] = []

    if provider_type == "callkaro":
        if not cfg.CALLKARO_API_KEY:
            missing.append("CALLKARO_API_KEY")
        if not cfg.CALLKARO_AGENT_ID:
            missing.append("CALLKARO_AGENT_ID")
    elif provider_type == "vapi":
        if not cfg.VAPI_API_KEY:
            missing.append("VAPI_API_KEY")
        if not cfg.VAPI_ASSISTANT_ID:
            missing.append("VAPI_ASSISTANT_ID")
        if not cfg.VAPI_PHONE_NUMBER_ID:
            missing.append("VAPI_PHONE_NUMBER_ID")
    elif provider_type != "mock":
        return {"valid": False, "provider": provider_type, "missing": [], "error": "unsupported provider"}

    return {"valid": not missing, "provider": provider_type, "missing": missing}

"""
Call provider webhook.

Order of work: verify signature, parse with the active provider, apply the
status to the call, maybe schedule a follow-up call. Vendors are answered
200 for unknown calls so they stop redelivering.
"""

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from daily_calls.config import settings
from daily_calls.db.helpers import DatabaseError
from daily_calls.infrastructure.observability.logging import get_logger
from daily_calls.providers.base import CallProvider, InvalidWebhookPayload
from daily_calls.queue.client import JobQueue
from daily_calls.routes.deps import get_call_store, get_job_queue, get_provider
from daily_calls.services.call_service import process_call_status_update

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

GENERIC_SIGNATURE_HEADER = "x-webhook-signature"


@router.post("/webhooks/call")
async def call_webhook(
    request: Request,
    provider: CallProvider = Depends(get_provider),
    store=Depends(get_call_store),
    queue: JobQueue = Depends(get_job_queue),
):
    raw = await request.body()

    if provider.supports_signature_verification:
        signature = request.headers.get(provider.signature_header or GENERIC_SIGNATURE_HEADER)
        signature = signature or request.headers.get(GENERIC_SIGNATURE_HEADER)
        if not provider.verify_webhook_signature(raw, signature):
            logger.warning("Invalid webhook signature, rejecting", provider=provider.name)
            return JSONResponse(status_code=401, content={"error": "Invalid signature"})
    else:
        logger.warning("Webhook signature not verified, provider has no secret", provider=provider.name)
        if settings.WEBHOOK_REQUIRE_SIGNATURE:
            return JSONResponse(status_code=401, content={"error": "Signature verification required"})

    try:
        raw_payload = json.loads(raw)
        payload = provider.parse_webhook(raw_payload)
    except (ValueError, InvalidWebhookPayload) as e:
        logger.warning(
            "Invalid webhook payload",
            provider=provider.name,
            error=str(e),
            error_type=type(e).__name__,
        )
        return JSONResponse(
            status_code=400, content={"success": False, "error": "Invalid webhook payload"}
        )

    logger.info(
        "Webhook received",
        provider=provider.name,
        vendor_call_id=payload.vendor_call_id,
        call_id=payload.call_id,
        status=payload.status.value,
    )

    try:
        return await process_call_status_update(payload, raw_payload, store=store, queue=queue)
    except DatabaseError as e:
        logger.error(
            "Failed to apply webhook status",
            provider=provider.name,
            vendor_call_id=payload.vendor_call_id,
            error=str(e),
        )
        return JSONResponse(
            status_code=500, content={"success": False, "error": "Database update failed"}
        )

# infrastructure/web/webhook_api.py
from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from domain.errors import CoordinatorError
from infrastructure.security.webhook_verifier import VerifiedWebhook, WebhookRequest, WebhookVerifier
from infrastructure.web.dependencies import ServiceComponents, get_components, http_error_for
from infrastructure.web.schemas import WebhookAck, change_summary
from shared.logging import logger

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADERS = ("x-webhook-signature", "linear-signature", "x-codegen-signature",
                     "x-hub-signature-256")
DELIVERY_HEADERS = ("x-delivery-id", "linear-delivery", "x-webhook-delivery")
TIMESTAMP_HEADER = "x-webhook-timestamp"


def _first_header(request: Request, names) -> Optional[str]:
    for name in names:
        value = request.headers.get(name)
        if value:
            return value
    return None


async def read_webhook(request: Request, verifier: WebhookVerifier) -> WebhookRequest:
    """Collect the delivery, refusing oversized bodies before they are buffered"""
    declared = request.headers.get("content-length")
    try:
        content_length = int(declared) if declared else None
    except ValueError:
        content_length = None

    webhook = WebhookRequest(
        body=b"",
        source=request.client.host if request.client else "unknown",
        signature=_first_header(request, SIGNATURE_HEADERS),
        content_length=content_length,
        delivery_id=_first_header(request, DELIVERY_HEADERS),
        timestamp=request.headers.get(TIMESTAMP_HEADER),
    )
    verifier.check_size(webhook)

    # Chunked uploads carry no length; count while reading
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > verifier.max_payload_bytes:
            verifier.check_size(replace(webhook, content_length=len(body)))

    return replace(webhook, body=bytes(body))


@router.post("/issues", response_model=WebhookAck)
async def receive_issue_event(
    request: Request,
    components: ServiceComponents = Depends(get_components)
):
    """Intake for issue tracker events"""

    async def handle(verified: VerifiedWebhook):
        return await components.coordinator.handle_issue_event(verified.event)

    try:
        webhook = await read_webhook(request, components.issue_verifier)
        outcome, replayed = await components.issue_verifier.process(webhook, handle)
        return WebhookAck(duplicate=replayed, result=outcome)

    except CoordinatorError as e:
        raise http_error_for(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to process issue webhook", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to process issue webhook: {str(e)}")


@router.post("/delegate", response_model=WebhookAck)
async def receive_delegate_callback(
    request: Request,
    components: ServiceComponents = Depends(get_components)
):
    """Progress, completion and failure callbacks from the execution delegate"""

    async def handle(verified: VerifiedWebhook):
        change = await components.relay.handle_callback(verified.event)
        return change_summary(change)

    try:
        webhook = await read_webhook(request, components.delegate_verifier)
        outcome, replayed = await components.delegate_verifier.process(webhook, handle)
        return WebhookAck(duplicate=replayed, result=outcome)

    except CoordinatorError as e:
        raise http_error_for(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to process delegate callback", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to process delegate callback: {str(e)}")

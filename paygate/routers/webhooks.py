"""
Inbound provider webhooks
"""

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.db import get_session
from paygate.core.responses import bad_request_response, success_response
from paygate.providers import GatewayFactory, get_gateway_factory
from paygate.schemas import WebhookAck
from paygate.services.reconciliation import ReconciliationService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/{gateway}")
async def receive_webhook(
    gateway: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    factory: GatewayFactory = Depends(get_gateway_factory),
):
    """
    Provider webhook (no API auth; the provider signature is the credential)

    - 400 when the signature does not verify
    - 200 for unknown events and unknown transactions, which are acknowledged
    - infrastructure errors propagate as 500 so the provider redelivers
    """
    adapter = factory.create(gateway)
    name = adapter.get_gateway_name()
    body = await request.body()
    log = logger.bind(gateway=name)

    signature = adapter.signature_from_headers(request.headers)
    if not await adapter.verify_webhook_signature(body, signature):
        log.warning("webhook_signature_rejected")
        return bad_request_response(msg="Invalid signature", code=4001)

    event = adapter.parse_webhook(body)
    log.info(
        "webhook_received",
        event_type=event.event_type.value,
        raw_event_type=event.raw_event_type,
        transaction_id=event.transaction_id,
    )

    outcome = await ReconciliationService(session).apply_webhook_event(name, event)
    ack = WebhookAck(
        gateway=name,
        event_type=event.event_type,
        transaction_id=event.transaction_id,
        outcome=outcome,
    )
    return success_response(data=ack.model_dump(mode="json"))

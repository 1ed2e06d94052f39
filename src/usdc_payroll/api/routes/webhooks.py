"""Webhook endpoints.

Every notification is authenticated against the raw request body before it
is parsed, and is acknowledged even when no local record matches it.
"""

import logging
from decimal import Decimal
from typing import Any, TypeVar

from fastapi import APIRouter, Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from usdc_payroll.api.dependencies import ServicesDep
from usdc_payroll.api.rate_limit import WEBHOOK_LIMIT_MESSAGE, limiter, webhook_limit
from usdc_payroll.api.schemas import (
    ApiResponse,
    AttestationEvent,
    CircleEvent,
    ErrorResponse,
    GasStationEvent,
    PaymasterEvent,
    PayoutEventData,
    TransferEventData,
    WebhookAck,
)
from usdc_payroll.errors import ValidationError
from usdc_payroll.services import Services
from usdc_payroll.services.reconciliation import ReconciliationResult, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Circle-Signature"
ATTESTED_STATUSES = ("attested", "complete", "completed")

EventT = TypeVar("EventT", bound=BaseModel)

_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
}

# One window shared by every webhook route
webhook_window = limiter.shared_limit(webhook_limit, scope="webhooks", error_message=WEBHOOK_LIMIT_MESSAGE)


async def verified_body(request: Request, services: Services) -> bytes:
    """Raw body, once its signature checks out."""
    raw = await request.body()
    verify_webhook_signature(raw, request.headers.get(SIGNATURE_HEADER), services.settings.webhook_secret)
    return raw


def parse_event(model: type[EventT], payload: bytes | dict[str, Any]) -> EventT:
    try:
        if isinstance(payload, bytes):
            return model.model_validate_json(payload)
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError("Malformed webhook payload", details=details) from None


def ack(result: ReconciliationResult | None = None, reason: str | None = None) -> ApiResponse[WebhookAck]:
    if result is None:
        return ApiResponse(data=WebhookAck(reason=reason))
    return ApiResponse(data=WebhookAck(applied=result.applied, reason=result.reason))


@router.post("/circle", response_model=ApiResponse[WebhookAck], responses=_RESPONSES)
@webhook_window
async def circle_webhook(request: Request, services: ServicesDep) -> ApiResponse[WebhookAck]:
    """Payout and transfer status notifications."""
    event = parse_event(CircleEvent, await verified_body(request, services))
    logger.info("Circle webhook received: %s (id %s)", event.event_type, event.data.get("id"))

    if event.event_type in ("payouts.completed", "payouts.failed"):
        payout = parse_event(PayoutEventData, event.data)
        result = await services.reconciliation.apply_payout_status(
            payout.id,
            event.event_type.split(".", 1)[1],
            transaction_hash=payout.transaction_hash,
            error_message=payout.error_message,
        )
    elif event.event_type in ("transfers.completed", "transfers.failed"):
        transfer = parse_event(TransferEventData, event.data)
        result = await services.reconciliation.apply_transfer_status(
            transfer.id,
            event.event_type.split(".", 1)[1],
            transaction_hash=transfer.transaction_hash,
            error_message=transfer.error_message,
        )
    else:
        logger.info("Unhandled webhook event type %s", event.event_type)
        return ack(reason="ignored")
    return ack(result)


@router.post("/cctp", response_model=ApiResponse[WebhookAck], responses=_RESPONSES)
@webhook_window
async def attestation_webhook(request: Request, services: ServicesDep) -> ApiResponse[WebhookAck]:
    """Attestation issued for a burn message."""
    event = parse_event(AttestationEvent, await verified_body(request, services))
    logger.info("Attestation webhook received for %s: %s", event.message_hash, event.status)
    if event.status.lower() not in ATTESTED_STATUSES or not event.attestation:
        return ack(reason="in_flight")
    result = await services.reconciliation.apply_attestation(event.message_hash, event.attestation, event.message)
    return ack(result)


@router.post("/gas-station", response_model=ApiResponse[WebhookAck], responses=_RESPONSES)
@webhook_window
async def gas_station_webhook(request: Request, services: ServicesDep) -> ApiResponse[WebhookAck]:
    """Sponsored transaction status change."""
    event = parse_event(GasStationEvent, await verified_body(request, services))
    logger.info("Gas station webhook received for %s: %s", event.transaction_id, event.status)
    result = await services.reconciliation.apply_gas_station_status(
        event.transaction_id,
        event.status,
        gas_used=str(event.gas_used) if event.gas_used is not None else None,
        transaction_hash=event.transaction_hash,
        error_message=event.error_message,
    )
    return ack(result)


@router.post("/paymaster", response_model=ApiResponse[WebhookAck], responses=_RESPONSES)
@webhook_window
async def paymaster_webhook(request: Request, services: ServicesDep) -> ApiResponse[WebhookAck]:
    """Fee-abstracted user operation status change."""
    event = parse_event(PaymasterEvent, await verified_body(request, services))
    logger.info("Paymaster webhook received for %s: %s", event.user_op_hash, event.status)
    result = await services.reconciliation.apply_paymaster_status(
        event.user_op_hash,
        event.status,
        gas_used=str(event.gas_used) if event.gas_used is not None else None,
        gas_fee_usdc=Decimal(event.gas_fee_in_usdc) if event.gas_fee_in_usdc is not None else None,
        transaction_hash=event.transaction_hash,
        error_message=event.error_message,
    )
    return ack(result)

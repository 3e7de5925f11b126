"""API routes exposing billing functionality."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ..billing import (
    ConcurrentUpdateError,
    EventInProgressError,
    InvalidEventFormatError,
    LedgerError,
    SignatureError,
    SubscriptionStoreError,
)
from ..schemas.billing import WebhookAcknowledgement
from ..services.billing import get_webhook_processor

logger = logging.getLogger("billing")

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook", response_model=WebhookAcknowledgement, response_model_by_alias=True)
async def receive_webhook(request: Request) -> WebhookAcknowledgement:
    processor = get_webhook_processor()

    # The body must be read byte-exact; the signature covers the raw payload.
    signature = request.headers.get(processor.signature_header)
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {processor.signature_header} header",
        )

    raw_body = await request.body()
    if not raw_body:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body is empty")

    try:
        result = await run_in_threadpool(processor.process, raw_body, signature)
    except SignatureError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.code) from exc
    except InvalidEventFormatError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except EventInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (LedgerError, SubscriptionStoreError, ConcurrentUpdateError) as exc:
        logger.error("Webhook delivery could not be processed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook could not be processed, retry later",
        ) from exc

    return WebhookAcknowledgement.from_result(result)

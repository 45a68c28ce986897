"""Provider webhook endpoints — receive and reconcile Stripe and PayPal events."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.api.deps import get_db
from fixitflow.api.errors import http_error
from fixitflow.billing import reconciler
from fixitflow.billing.errors import BillingError
from fixitflow.schemas.subscription import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


async def _reconcile(request: Request, db: AsyncSession, provider_name: str) -> WebhookResponse:
    # Raw bytes are required for signature verification
    payload = await request.body()
    headers = {key.lower(): value for key, value in request.headers.items()}

    try:
        result = await reconciler.handle(db, provider_name, payload, headers)
        await db.commit()
    except BillingError as e:
        await db.rollback()
        logger.warning("Rejected %s webhook: %s", provider_name, e)
        raise http_error(e) from e
    except IntegrityError:
        # A concurrent delivery of the same event claimed it first
        await db.rollback()
        logger.info("Concurrent duplicate %s webhook delivery", provider_name)
        return WebhookResponse(status="duplicate")
    except Exception as e:
        await db.rollback()
        logger.exception("Error processing %s webhook", provider_name)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return WebhookResponse(status=result.status, event_id=result.event_id)


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> WebhookResponse:
    """Receive and process Stripe webhook events."""
    return await _reconcile(request, db, "stripe")


@router.post("/paypal", response_model=WebhookResponse)
async def paypal_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> WebhookResponse:
    """Receive and process PayPal webhook events."""
    return await _reconcile(request, db, "paypal")

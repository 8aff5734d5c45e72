import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from incomegoals.core.database import get_db
from incomegoals.services.analytics_service import AnalyticsService
from incomegoals.services.billing_service import BillingService, WebhookVerificationError, get_billing_service
from incomegoals.services.subscription_service import SubscriptionService, get_subscription_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias='Stripe-Signature'),
    db: Session = Depends(get_db),
    billing_service: BillingService = Depends(get_billing_service),
    subscription_service: SubscriptionService = Depends(get_subscription_service),
):
    """Handle Stripe webhook deliveries

    The raw body is authenticated before it is parsed. Handler failures
    answer 500 so Stripe redelivers; deliveries are safe to replay.
    """
    payload = await request.body()
    logger.info(f"handle_stripe_webhook: Entry - {len(payload)} bytes")
    analytics = AnalyticsService()

    try:
        event = await asyncio.to_thread(billing_service.construct_event, payload, stripe_signature)
    except WebhookVerificationError as e:
        logger.error(f"handle_stripe_webhook: Verification failed - {e}")
        analytics.log_failure(action='webhook_stripe', error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": f"Webhook Error: {e}", "code": "INVALID_SIGNATURE"},
        )

    try:
        result = await subscription_service.handle_webhook_event(db, event)
    except Exception as e:
        logger.error(f"handle_stripe_webhook: Failure - {event.get('type')}: {e}")
        analytics.log_failure(
            action='webhook_stripe',
            error=str(e),
            parameters={'event_type': event.get('type'), 'event_id': event.get('id')},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Webhook handling failed", "code": "WEBHOOK_ERROR"},
        )

    analytics.log_success(
        action='webhook_stripe',
        parameters={'event_type': event.get('type'), 'action': result['action']},
    )
    logger.info(f"handle_stripe_webhook: Success - {event.get('type')}: {result['action']}")
    return {"received": True, **result}

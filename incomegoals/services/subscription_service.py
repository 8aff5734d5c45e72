import asyncio
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import or_
from sqlalchemy.orm import Session

from incomegoals.models.subscription_event import SubscriptionEvent, SubscriptionEventType
from incomegoals.models.user import SubscriptionStatus, UserProfile
from incomegoals.services.analytics_service import AnalyticsService
from incomegoals.services.billing_service import GUEST_USER_ID, get_billing_service
from incomegoals.services.highlevel_service import get_highlevel_service

logger = logging.getLogger(__name__)

ACTIVE_BILLING_STATUS = 'active'

PLAN_TYPE_TO_STATUS = {
    'monthly': SubscriptionStatus.MONTHLY.value,
    'yearly': SubscriptionStatus.ANNUAL.value,
    'lifetime': SubscriptionStatus.LIFETIME.value,
}
# Unrecognized or missing plan types fall back to monthly (logged on every use).
# TODO: reject unknown plan types once legacy checkout metadata has been audited.
DEFAULT_PLAN_STATUS = SubscriptionStatus.MONTHLY.value

# Event types that carry the user's current subscription id
CURRENT_SUBSCRIPTION_EVENTS = (
    SubscriptionEventType.SUBSCRIPTION_CREATED.value,
    SubscriptionEventType.CHECKOUT_COMPLETED.value,
)

CANONICAL_STATUSES = {status.value for status in SubscriptionStatus}


def canonical_plan(plan_type: Optional[str]) -> str:
    """Map an upstream plan type to a paid canonical status"""
    status = PLAN_TYPE_TO_STATUS.get((plan_type or '').lower())
    if status is None:
        logger.warning(
            f"canonical_plan: Unrecognized plan type {plan_type!r}, defaulting to {DEFAULT_PLAN_STATUS}"
        )
        return DEFAULT_PLAN_STATUS
    return status


def resolve_status(plan_type: Optional[str], billing_status: Optional[str]) -> str:
    """Canonical status for a plan type in a given billing state. Anything not active is free."""
    if billing_status != ACTIVE_BILLING_STATUS:
        return SubscriptionStatus.FREE.value
    return canonical_plan(plan_type)


def is_guest(user_id: Optional[str]) -> bool:
    return not user_id or user_id == GUEST_USER_ID


class WebhookPersistenceError(Exception):
    """A webhook delivery left nothing in the database and must be redelivered"""


class PlanChangeResult(BaseModel):
    """Outcome of a plan change. Each step succeeds or fails on its own."""
    user_id: str
    status: str
    profile_updated: bool = False
    event_recorded: bool = False
    crm_synced: bool = False
    original_status: Optional[str] = None


class SubscriptionService:
    """
    Keeps the cached profile status, the live Stripe subscription and the
    CRM subscription tag consistent.

    Writes run as a saga (profile, then audit event, then CRM tags) with each
    step isolated; reads fall back to Stripe and heal the cached status.
    """

    def __init__(self, billing=None, crm=None, analytics: Optional[AnalyticsService] = None):
        self.billing = billing or get_billing_service()
        self.crm = crm or get_highlevel_service()
        self.analytics = analytics or AnalyticsService()
        self.logger = logging.getLogger(__name__)

    # Write path

    async def apply_plan_change(
        self,
        db: Session,
        user_id: str,
        plan_type: Optional[str],
        billing_status: Optional[str],
        event_type: SubscriptionEventType,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        stripe_checkout_session_id: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        payload: Optional[dict] = None,
        email: Optional[str] = None,
    ) -> PlanChangeResult:
        """Apply a billing transition to the profile, the audit log and the CRM. Never raises."""
        self.logger.info(
            f"apply_plan_change: Entry - user: {user_id}, plan: {plan_type}, billing: {billing_status}, event: {event_type.value}"
        )
        status = resolve_status(plan_type, billing_status)
        result = await self._run_saga(
            db,
            user_id=user_id,
            status=status,
            event_type=event_type,
            plan_type=plan_type,
            billing_status=billing_status,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_checkout_session_id=stripe_checkout_session_id,
            amount=amount,
            currency=currency,
            payload=payload,
            email=email,
        )
        self.logger.info(f"apply_plan_change: Success - {result.model_dump()}")
        return result

    async def apply_manual_fix(
        self,
        db: Session,
        email: str,
        subscription_status: str,
        stripe_customer_id: Optional[str] = None,
        fixed_by: str = 'admin',
    ) -> PlanChangeResult:
        """Administrative override to a canonical status, audited as a manual_fix event"""
        self.logger.info(f"apply_manual_fix: Entry - {email} -> {subscription_status}")

        if subscription_status not in CANONICAL_STATUSES:
            raise ValueError(f"Invalid subscription status: {subscription_status}")

        profile = db.query(UserProfile).filter(UserProfile.email == email.lower()).first()
        if not profile:
            raise ValueError(f"User not found: {email}")

        original_status = profile.subscription_status
        billing_status = 'cancelled' if subscription_status == SubscriptionStatus.FREE.value else ACTIVE_BILLING_STATUS
        result = await self._run_saga(
            db,
            user_id=profile.id,
            status=subscription_status,
            event_type=SubscriptionEventType.MANUAL_FIX,
            plan_type=subscription_status,
            billing_status=billing_status,
            stripe_customer_id=stripe_customer_id,
            payload={
                'fixed_by': fixed_by,
                'original_status': original_status,
                'new_status': subscription_status,
                'fixed_at': datetime.utcnow().isoformat(),
            },
            email=profile.email,
        )
        result.original_status = original_status

        self.analytics.log_success(
            action='manual_subscription_fix',
            user_id=profile.id,
            parameters={'original_status': original_status, 'new_status': subscription_status},
        )
        self.logger.info(f"apply_manual_fix: Success - {email}: {original_status} -> {subscription_status}")
        return result

    def record_event(
        self,
        db: Session,
        user_id: str,
        event_type: SubscriptionEventType,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        plan_type: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        payload: Optional[dict] = None,
        stripe_checkout_session_id: Optional[str] = None,
    ) -> bool:
        """Append an audit entry without changing any state"""
        return self._append_event(
            db,
            user_id=user_id,
            event_type=event_type,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            plan_type=plan_type,
            amount=amount,
            currency=currency,
            payload=payload,
            stripe_checkout_session_id=stripe_checkout_session_id,
        )

    async def sync_crm_tags(
        self,
        email: Optional[str],
        status: str,
        plan_type: Optional[str] = None,
        billing_status: Optional[str] = ACTIVE_BILLING_STATUS,
        user_id: Optional[str] = None,
    ) -> bool:
        """Converge the contact's subscription tag to `status`. Safe to retry. Never raises."""
        if not email:
            self.logger.warning(f"sync_crm_tags: No email for user {user_id}, skipping CRM sync")
            return False

        try:
            tracked = await self.crm.track_subscription_event(
                email,
                status,
                plan_type=plan_type,
                billing_status=billing_status or 'inactive',
            )
            if tracked is None:
                self.logger.warning(f"sync_crm_tags: No CRM contact for {email}")
                return False
            self.logger.info(f"sync_crm_tags: Success - {email} -> {status}")
            return True
        except Exception as e:
            self.logger.error(f"sync_crm_tags: Failure - {email}: {e}")
            self.analytics.log_failure(
                action='sync_crm_tags',
                error=str(e),
                user_id=user_id,
                parameters={'status': status},
            )
            return False

    async def _run_saga(
        self,
        db: Session,
        user_id: str,
        status: str,
        event_type: SubscriptionEventType,
        plan_type: Optional[str] = None,
        billing_status: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        stripe_checkout_session_id: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        payload: Optional[dict] = None,
        email: Optional[str] = None,
    ) -> PlanChangeResult:
        result = PlanChangeResult(user_id=user_id, status=status)

        # 1. Profile (source of truth)
        profile_email = self._update_profile(db, user_id, status, stripe_customer_id, email)
        result.profile_updated = profile_email is not None

        # 2. Audit log
        result.event_recorded = self._append_event(
            db,
            user_id=user_id,
            event_type=event_type,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            plan_type=plan_type,
            amount=amount,
            currency=currency,
            payload=payload,
            stripe_checkout_session_id=stripe_checkout_session_id,
        )

        # 3. CRM tags, best effort; steps 1-2 stand regardless
        result.crm_synced = await self.sync_crm_tags(
            profile_email or email,
            status,
            plan_type=plan_type,
            billing_status=billing_status,
            user_id=user_id,
        )
        return result

    def _update_profile(
        self,
        db: Session,
        user_id: str,
        status: str,
        stripe_customer_id: Optional[str],
        email: Optional[str],
    ) -> Optional[str]:
        """Write the canonical status; returns the profile email, or None if nothing was written"""
        try:
            profile = db.query(UserProfile).filter(UserProfile.id == user_id).first()
            if profile is None:
                if not email:
                    self.logger.warning(f"_update_profile: No profile and no email for user {user_id}, skipping")
                    return None
                profile = UserProfile(
                    id=user_id,
                    email=email.lower(),
                    subscription_status=status,
                    stripe_customer_id=stripe_customer_id,
                )
                db.add(profile)
            else:
                profile.subscription_status = status
                if stripe_customer_id:
                    profile.stripe_customer_id = stripe_customer_id
                profile.updated_at = datetime.utcnow()

            db.commit()
            self.logger.info(f"_update_profile: Success - user: {user_id}, status: {status}")
            return profile.email
        except Exception as e:
            db.rollback()
            self.logger.error(f"_update_profile: Failure - user: {user_id}: {e}")
            self.analytics.log_failure(
                action='update_subscription_status',
                error=str(e),
                user_id=user_id,
                parameters={'status': status},
            )
            return None

    def _append_event(
        self,
        db: Session,
        user_id: str,
        event_type: SubscriptionEventType,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        plan_type: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        payload: Optional[dict] = None,
        stripe_checkout_session_id: Optional[str] = None,
    ) -> bool:
        try:
            db.add(SubscriptionEvent(
                user_id=user_id,
                event_type=event_type.value,
                stripe_customer_id=stripe_customer_id,
                stripe_subscription_id=stripe_subscription_id,
                stripe_checkout_session_id=stripe_checkout_session_id,
                plan_type=plan_type,
                amount=amount,
                currency=currency,
                event_data=payload,
            ))
            db.commit()
            self.logger.info(f"_append_event: Success - user: {user_id}, type: {event_type.value}")
            return True
        except Exception as e:
            db.rollback()
            self.logger.error(f"_append_event: Failure - user: {user_id}, type: {event_type.value}: {e}")
            self.analytics.log_failure(
                action='record_subscription_event',
                error=str(e),
                user_id=user_id,
                parameters={'event_type': event_type.value},
            )
            return False

    # Read path

    def find_current_subscription(self, db: Session, user_id: str) -> Optional[SubscriptionEvent]:
        """Most recent checkout/subscription event that carries a subscription id"""
        return db.query(SubscriptionEvent).filter(
            SubscriptionEvent.user_id == user_id,
            SubscriptionEvent.event_type.in_(CURRENT_SUBSCRIPTION_EVENTS),
            SubscriptionEvent.stripe_subscription_id.isnot(None),
        ).order_by(
            SubscriptionEvent.created_at.desc(),
            SubscriptionEvent.id.desc(),
        ).first()

    def find_checkout_redemption(
        self,
        db: Session,
        checkout_session_id: str,
        stripe_subscription_id: Optional[str] = None,
    ) -> Optional[SubscriptionEvent]:
        """First event already recorded for a checkout session or its subscription"""
        match = SubscriptionEvent.stripe_checkout_session_id == checkout_session_id
        if stripe_subscription_id:
            match = or_(match, SubscriptionEvent.stripe_subscription_id == stripe_subscription_id)
        return db.query(SubscriptionEvent).filter(match).order_by(SubscriptionEvent.id).first()

    async def get_subscription_status(self, db: Session, user_id: str) -> dict:
        """
        Current plan for feature gating. Never raises.

        A paid cached status is trusted as is. Otherwise the latest known
        subscription is checked against Stripe and the cached status is
        rewritten from the live answer.
        """
        self.logger.info(f"get_subscription_status: Entry - user: {user_id}")

        try:
            profile = db.query(UserProfile).filter(UserProfile.id == user_id).first()
            if profile and profile.subscription_status and profile.subscription_status != SubscriptionStatus.FREE.value:
                self.logger.info(f"get_subscription_status: Success (cached) - {profile.subscription_status}")
                return {'status': 'active', 'plan': profile.subscription_status}

            event = self.find_current_subscription(db, user_id)
        except Exception as e:
            db.rollback()
            self.logger.error(f"get_subscription_status: Failure - {e}")
            self.analytics.log_failure(action='get_subscription_status', error=str(e), user_id=user_id)
            return {'status': 'inactive', 'plan': None}

        if event is None:
            self.logger.info(f"get_subscription_status: Success - no subscription for {user_id}")
            return {'status': 'inactive', 'plan': None}

        plan = canonical_plan(event.plan_type)
        try:
            live = await asyncio.to_thread(self.billing.retrieve_subscription, event.stripe_subscription_id)
        except Exception as e:
            self.logger.warning(f"get_subscription_status: Billing unavailable, degrading - {e}")
            self.analytics.log_failure(
                action='get_subscription_status',
                error=str(e),
                user_id=user_id,
                parameters={'degraded': True},
            )
            return {'status': 'inactive', 'plan': plan, 'degraded': True}

        live_status = live.get('status')
        healed_status = resolve_status(event.plan_type, live_status)

        if profile is not None and profile.subscription_status != healed_status:
            try:
                profile.subscription_status = healed_status
                profile.updated_at = datetime.utcnow()
                db.commit()
                self.logger.info(f"get_subscription_status: Healed cached status - {user_id} -> {healed_status}")
            except Exception as e:
                db.rollback()
                self.logger.error(f"get_subscription_status: Could not persist healed status - {e}")

        self.logger.info(f"get_subscription_status: Success (live) - {user_id}: {live_status}")
        return {
            'status': live_status,
            'plan': plan,
            'current_period_end': live.get('current_period_end'),
            'cancel_at_period_end': live.get('cancel_at_period_end', False),
        }

    # Webhooks

    async def handle_webhook_event(self, db: Session, event: dict) -> dict:
        """Dispatch a verified Stripe event. Replays append events but leave state unchanged."""
        event_type = event.get('type')
        obj = (event.get('data') or {}).get('object') or {}
        self.logger.info(f"handle_webhook_event: Entry - {event_type} ({event.get('id')})")

        handlers = {
            'checkout.session.completed': self._on_checkout_completed,
            'customer.subscription.created': self._on_subscription_created,
            'customer.subscription.updated': self._on_subscription_updated,
            'customer.subscription.deleted': self._on_subscription_deleted,
            'invoice.payment_succeeded': self._on_invoice_paid,
            'invoice.payment_failed': self._on_invoice_failed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            self.logger.info(f"handle_webhook_event: Unhandled event type {event_type}")
            return {'handled': False, 'action': 'ignored'}

        action = await handler(db, obj)
        self.logger.info(f"handle_webhook_event: Success - {event_type}: {action}")
        return {'handled': True, 'action': action}

    def _require_persisted(self, persisted: bool):
        # CRM-only failures are acknowledged; a delivery that stored nothing is not
        if not persisted:
            raise WebhookPersistenceError("Webhook delivery could not be stored")

    async def _on_checkout_completed(self, db: Session, session: dict) -> str:
        metadata = session.get('metadata') or {}
        user_id = metadata.get('userId')
        if is_guest(user_id):
            # Reconciled when the guest registers with the session id
            self.logger.info(f"_on_checkout_completed: Guest session {session.get('id')}, deferring to registration")
            return 'skipped_guest'

        email = session.get('customer_email') or (session.get('customer_details') or {}).get('email')
        result = await self.apply_plan_change(
            db,
            user_id=user_id,
            plan_type=metadata.get('planType'),
            billing_status=ACTIVE_BILLING_STATUS,
            event_type=SubscriptionEventType.CHECKOUT_COMPLETED,
            stripe_customer_id=session.get('customer'),
            stripe_subscription_id=session.get('subscription'),
            amount=session.get('amount_total'),
            currency=session.get('currency'),
            stripe_checkout_session_id=session.get('id'),
            payload=session,
            email=email,
        )
        self._require_persisted(result.profile_updated or result.event_recorded)
        return 'plan_changed'

    async def _on_subscription_created(self, db: Session, subscription: dict) -> str:
        metadata = subscription.get('metadata') or {}
        user_id = metadata.get('userId')
        if is_guest(user_id):
            return 'skipped_guest'

        recorded = self.record_event(
            db,
            user_id=user_id,
            event_type=SubscriptionEventType.SUBSCRIPTION_CREATED,
            stripe_customer_id=subscription.get('customer'),
            stripe_subscription_id=subscription.get('id'),
            plan_type=metadata.get('planType'),
            payload=subscription,
        )
        self._require_persisted(recorded)
        return 'recorded'

    async def _on_subscription_updated(self, db: Session, subscription: dict) -> str:
        metadata = subscription.get('metadata') or {}
        user_id = metadata.get('userId')
        if is_guest(user_id):
            return 'skipped_guest'

        billing_status = subscription.get('status')
        plan_type = metadata.get('planType')
        if billing_status != ACTIVE_BILLING_STATUS or plan_type:
            result = await self.apply_plan_change(
                db,
                user_id=user_id,
                plan_type=plan_type,
                billing_status=billing_status,
                event_type=SubscriptionEventType.SUBSCRIPTION_UPDATED,
                stripe_customer_id=subscription.get('customer'),
                stripe_subscription_id=subscription.get('id'),
                payload=subscription,
            )
            self._require_persisted(result.profile_updated or result.event_recorded)
            return 'plan_changed'

        # Active without a plan type: keep the cached plan rather than guessing one
        recorded = self.record_event(
            db,
            user_id=user_id,
            event_type=SubscriptionEventType.SUBSCRIPTION_UPDATED,
            stripe_customer_id=subscription.get('customer'),
            stripe_subscription_id=subscription.get('id'),
            payload=subscription,
        )
        self._require_persisted(recorded)
        return 'recorded'

    async def _on_subscription_deleted(self, db: Session, subscription: dict) -> str:
        metadata = subscription.get('metadata') or {}
        user_id = metadata.get('userId')
        if is_guest(user_id):
            return 'skipped_guest'

        result = await self.apply_plan_change(
            db,
            user_id=user_id,
            plan_type=metadata.get('planType'),
            billing_status=subscription.get('status') or 'canceled',
            event_type=SubscriptionEventType.SUBSCRIPTION_DELETED,
            stripe_customer_id=subscription.get('customer'),
            stripe_subscription_id=subscription.get('id'),
            payload=subscription,
        )
        self._require_persisted(result.profile_updated or result.event_recorded)
        return 'plan_changed'

    async def _on_invoice_paid(self, db: Session, invoice: dict) -> str:
        return await self._record_invoice(
            db, invoice, SubscriptionEventType.PAYMENT_SUCCEEDED, invoice.get('amount_paid')
        )

    async def _on_invoice_failed(self, db: Session, invoice: dict) -> str:
        return await self._record_invoice(
            db, invoice, SubscriptionEventType.PAYMENT_FAILED, invoice.get('amount_due')
        )

    async def _record_invoice(
        self,
        db: Session,
        invoice: dict,
        event_type: SubscriptionEventType,
        amount: Optional[int],
    ) -> str:
        subscription_id = invoice.get('subscription')
        if not subscription_id:
            # Newer API versions nest the subscription under the invoice parent
            details = (invoice.get('parent') or {}).get('subscription_details') or {}
            subscription_id = details.get('subscription')
        if not subscription_id:
            return 'skipped_no_subscription'

        try:
            live = await asyncio.to_thread(self.billing.retrieve_subscription, subscription_id)
        except Exception as e:
            self.logger.error(f"_record_invoice: Could not retrieve subscription {subscription_id} - {e}")
            return 'skipped_billing_unavailable'

        metadata = live.get('metadata') or {}
        user_id = metadata.get('userId')
        if is_guest(user_id):
            return 'skipped_guest'

        recorded = self.record_event(
            db,
            user_id=user_id,
            event_type=event_type,
            stripe_customer_id=invoice.get('customer'),
            stripe_subscription_id=subscription_id,
            plan_type=metadata.get('planType'),
            amount=amount,
            currency=invoice.get('currency'),
            payload=invoice,
        )
        self._require_persisted(recorded)
        return 'recorded'


def get_subscription_service() -> SubscriptionService:
    """Dependency to get subscription service instance"""
    return SubscriptionService()

import json
import logging
from typing import Any, Optional

import stripe

from incomegoals.core.config import settings

logger = logging.getLogger(__name__)

PRODUCT_NAME = 'Income Goal Calculator Pro'
PRODUCT_DESCRIPTION = 'Professional CRE activity tracking and goal management platform'

BASE_FEATURES = ['Activity Tracking', 'Progress Dashboard', 'Goal Management', 'Historical Data']

# Upstream plan types. Prices are in whole USD; interval None means a one-time payment.
PRICING_PLANS = {
    'monthly': {
        'name': 'Monthly Plan',
        'price': 19,
        'interval': 'month',
        'features': BASE_FEATURES,
    },
    'yearly': {
        'name': 'Yearly Plan',
        'price': 189,
        'interval': 'year',
        'features': BASE_FEATURES + ['2 Months Free'],
    },
    'lifetime': {
        'name': 'Lifetime Access',
        'price': 297,
        'interval': None,
        'features': BASE_FEATURES + ['Lifetime Access', 'Future Updates'],
    },
}

GUEST_USER_ID = 'guest'
PLACEHOLDER_CUSTOMER_ID = 'temp_customer'


class BillingError(Exception):
    """Stripe call failed or billing is not configured"""


class WebhookVerificationError(Exception):
    """Webhook payload could not be authenticated"""


def stripe_field(obj: Any, key: str, default=None):
    """Read a field from a Stripe object or a plain dict"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError, AttributeError):
        return getattr(obj, key, default)


class BillingService:
    """Thin wrapper over the Stripe SDK. The SDK module is injectable for tests."""

    def __init__(self, stripe_module=None, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.stripe = stripe_module or stripe
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        if self.api_key:
            self.stripe.api_key = self.api_key
        self._price_ids = {
            'monthly': settings.stripe_price_monthly,
            'yearly': settings.stripe_price_yearly,
            'lifetime': settings.stripe_price_lifetime,
        }
        self.logger = logging.getLogger(__name__)

    def _require_configured(self):
        if not self.api_key:
            raise BillingError("Stripe is not configured")

    def get_plans(self) -> list[dict]:
        return [
            {
                'id': plan_type,
                'name': plan['name'],
                'price': plan['price'],
                'interval': plan['interval'],
                'features': plan['features'],
            }
            for plan_type, plan in PRICING_PLANS.items()
        ]

    def initialize_products(self) -> dict:
        """Find or create the product and one price per plan; returns plan type -> price id"""
        self.logger.info("initialize_products: Entry")
        self._require_configured()

        try:
            products = self.stripe.Product.list(limit=10)
            product = next(
                (p for p in stripe_field(products, 'data', []) if stripe_field(p, 'name') == PRODUCT_NAME),
                None,
            )
            if product is None:
                product = self.stripe.Product.create(
                    name=PRODUCT_NAME,
                    description=PRODUCT_DESCRIPTION,
                    metadata={'type': 'subscription'},
                )
            product_id = stripe_field(product, 'id')

            prices = stripe_field(self.stripe.Price.list(product=product_id, limit=10), 'data', [])
            for plan_type, plan in PRICING_PLANS.items():
                unit_amount = plan['price'] * 100
                existing = next(
                    (
                        p for p in prices
                        if stripe_field(p, 'unit_amount') == unit_amount
                        and stripe_field(stripe_field(p, 'recurring'), 'interval') == plan['interval']
                    ),
                    None,
                )
                if existing is None:
                    price_data = {
                        'product': product_id,
                        'unit_amount': unit_amount,
                        'currency': 'usd',
                        'metadata': {'plan': plan_type},
                    }
                    if plan['interval']:
                        price_data['recurring'] = {'interval': plan['interval']}
                    existing = self.stripe.Price.create(**price_data)
                self._price_ids[plan_type] = stripe_field(existing, 'id')

            self.logger.info(f"initialize_products: Success - {self._price_ids}")
            return dict(self._price_ids)
        except stripe.StripeError as e:
            self.logger.error(f"initialize_products: Failure - {e}")
            raise BillingError(str(e))

    def get_price_id(self, plan_type: str) -> str:
        if plan_type not in PRICING_PLANS:
            raise ValueError(f"Invalid plan type: {plan_type}")
        if not self._price_ids.get(plan_type):
            self.initialize_products()
        return self._price_ids[plan_type]

    def create_checkout_session(
        self,
        plan_type: str,
        success_url: str,
        cancel_url: str,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> dict:
        """
        Create a checkout session. Recurring plans use subscription mode,
        lifetime uses one-time payment mode. Guests are tagged userId=guest.
        """
        self.logger.info(f"create_checkout_session: Entry - user: {user_id or GUEST_USER_ID}, plan: {plan_type}")
        self._require_configured()
        plan = PRICING_PLANS.get(plan_type)
        if plan is None:
            raise ValueError(f"Invalid plan type: {plan_type}")

        metadata = {'userId': user_id or GUEST_USER_ID, 'planType': plan_type}
        session_data = {
            'line_items': [{'price': self.get_price_id(plan_type), 'quantity': 1}],
            'mode': 'subscription' if plan['interval'] else 'payment',
            'success_url': success_url,
            'cancel_url': cancel_url,
            'metadata': metadata,
            'automatic_tax': {'enabled': True},
        }
        if email:
            session_data['customer_email'] = email
        if plan['interval']:
            session_data['subscription_data'] = {'metadata': dict(metadata)}
            session_data['billing_address_collection'] = 'required'

        try:
            session = self.stripe.checkout.Session.create(**session_data)
        except stripe.StripeError as e:
            self.logger.error(f"create_checkout_session: Failure - {e}")
            raise BillingError(str(e))

        self.logger.info(f"create_checkout_session: Success - {stripe_field(session, 'id')}")
        return {'session_id': stripe_field(session, 'id'), 'url': stripe_field(session, 'url')}

    def create_billing_portal_session(self, customer_id: Optional[str], return_url: str) -> dict:
        self.logger.info(f"create_billing_portal_session: Entry - {customer_id}")
        self._require_configured()
        if not customer_id or customer_id == PLACEHOLDER_CUSTOMER_ID:
            raise ValueError("No billing account found for this user")

        try:
            session = self.stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
        except stripe.StripeError as e:
            self.logger.error(f"create_billing_portal_session: Failure - {e}")
            raise BillingError(str(e))

        self.logger.info("create_billing_portal_session: Success")
        return {'url': stripe_field(session, 'url')}

    def retrieve_subscription(self, subscription_id: str) -> dict:
        """Live subscription view: status, period end and cancel flag"""
        self._require_configured()
        try:
            subscription = self.stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            self.logger.error(f"retrieve_subscription: Failure - {e}")
            raise BillingError(str(e))
        return self._subscription_view(subscription)

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> dict:
        self.logger.info(f"set_cancel_at_period_end: Entry - {subscription_id}, cancel: {cancel}")
        self._require_configured()
        try:
            subscription = self.stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            self.logger.error(f"set_cancel_at_period_end: Failure - {e}")
            raise BillingError(str(e))
        self.logger.info(f"set_cancel_at_period_end: Success - {subscription_id}")
        return self._subscription_view(subscription)

    def assign_subscription_user(self, subscription_id: str, user_id: str) -> dict:
        """Point a guest subscription's metadata at the account created for it"""
        self.logger.info(f"assign_subscription_user: Entry - {subscription_id} -> {user_id}")
        self._require_configured()
        try:
            subscription = self.stripe.Subscription.modify(subscription_id, metadata={'userId': user_id})
        except stripe.StripeError as e:
            self.logger.error(f"assign_subscription_user: Failure - {e}")
            raise BillingError(str(e))
        self.logger.info(f"assign_subscription_user: Success - {subscription_id}")
        return self._subscription_view(subscription)

    def retrieve_checkout_session(self, session_id: str) -> dict:
        self._require_configured()
        try:
            session = self.stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            self.logger.error(f"retrieve_checkout_session: Failure - {e}")
            raise BillingError(str(e))

        customer_details = stripe_field(session, 'customer_details')
        metadata = stripe_field(session, 'metadata') or {}
        return {
            'id': stripe_field(session, 'id'),
            'payment_status': stripe_field(session, 'payment_status'),
            'status': stripe_field(session, 'status'),
            'customer': stripe_field(session, 'customer'),
            'subscription': stripe_field(session, 'subscription'),
            'customer_email': stripe_field(session, 'customer_email') or stripe_field(customer_details, 'email'),
            'amount_total': stripe_field(session, 'amount_total'),
            'currency': stripe_field(session, 'currency'),
            'metadata': {
                'userId': stripe_field(metadata, 'userId'),
                'planType': stripe_field(metadata, 'planType'),
            },
        }

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> dict:
        """
        Authenticate a webhook delivery and return the event as a plain dict.

        Without a configured secret, unverified payloads are accepted outside
        production only.
        """
        if self.webhook_secret:
            if not sig_header:
                raise WebhookVerificationError("Missing Stripe-Signature header")
            try:
                self.stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
            except stripe.SignatureVerificationError as e:
                self.logger.error(f"construct_event: Signature verification failed - {e}")
                raise WebhookVerificationError(str(e))
            except ValueError as e:
                self.logger.error(f"construct_event: Invalid payload - {e}")
                raise WebhookVerificationError("Invalid payload")
        elif settings.is_production:
            raise WebhookVerificationError("Webhook secret not configured")
        else:
            self.logger.warning("construct_event: STRIPE_WEBHOOK_SECRET not set - skipping signature verification")

        try:
            return json.loads(payload)
        except ValueError:
            raise WebhookVerificationError("Invalid payload")

    def _subscription_view(self, subscription) -> dict:
        current_period_end = stripe_field(subscription, 'current_period_end')
        if current_period_end is None:
            # Newer API versions carry the period on the subscription items
            items = stripe_field(stripe_field(subscription, 'items'), 'data') or []
            if items:
                current_period_end = stripe_field(items[0], 'current_period_end')
        metadata = stripe_field(subscription, 'metadata') or {}
        return {
            'id': stripe_field(subscription, 'id'),
            'status': stripe_field(subscription, 'status'),
            'current_period_end': current_period_end,
            'cancel_at_period_end': bool(stripe_field(subscription, 'cancel_at_period_end', False)),
            'metadata': {
                'userId': stripe_field(metadata, 'userId'),
                'planType': stripe_field(metadata, 'planType'),
            },
        }


_billing_service: Optional[BillingService] = None


def get_billing_service() -> BillingService:
    """Get billing service instance (singleton)"""
    global _billing_service
    if _billing_service is None:
        _billing_service = BillingService()
    return _billing_service


def set_billing_service(service: Optional[BillingService]):
    """Set billing service instance (for testing)"""
    global _billing_service
    _billing_service = service

import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session

from incomegoals.core.firebase_service import AuthError, get_firebase_service
from incomegoals.models.subscription_event import SubscriptionEventType
from incomegoals.models.user import SubscriptionStatus
from incomegoals.services.analytics_service import AnalyticsService
from incomegoals.services.billing_service import get_billing_service
from incomegoals.services.highlevel_service import get_highlevel_service
from incomegoals.services.profile_service import ProfileService
from incomegoals.services.subscription_service import SubscriptionService, canonical_plan, is_guest

logger = logging.getLogger(__name__)

PAID_PAYMENT_STATUS = 'paid'


class AuthService:
    """
    Account lifecycle on top of Firebase Auth.

    Firebase owns credentials and tokens; the profile row and the CRM contact
    are created alongside the account. CRM failures never fail a request.
    """

    def __init__(
        self,
        firebase=None,
        profiles: Optional[ProfileService] = None,
        crm=None,
        billing=None,
        subscriptions: Optional[SubscriptionService] = None,
    ):
        self.firebase = firebase or get_firebase_service()
        self.profiles = profiles or ProfileService()
        self.crm = crm or get_highlevel_service()
        self.billing = billing or get_billing_service()
        self.subscriptions = subscriptions or SubscriptionService(billing=self.billing, crm=self.crm)
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    async def register(
        self,
        db: Session,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        user_type: str,
    ) -> dict:
        email = email.lower()
        self.logger.info(f"register: Entry - {email}")

        uid = await asyncio.to_thread(
            self.firebase.create_user, email, password, f"{first_name} {last_name}".strip()
        )

        try:
            self.profiles.create_profile(
                db,
                user_id=uid,
                email=email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                user_type=user_type,
            )
        except Exception as e:
            # The account exists; the profile is created on first login
            self.logger.error(f"register: Profile creation failed - {e}")
        else:
            await self._create_contact(
                email,
                first_name,
                last_name,
                user_type,
                SubscriptionStatus.FREE.value,
                {'registration_source': 'Income Goal Calculator', 'user_id': uid},
            )

        await self._send_verification(email, password)

        self.analytics.log_success(action='register', user_id=uid, parameters={'user_type': user_type})
        self.logger.info(f"register: Success - {uid}")
        return {'id': uid, 'email': email}

    async def register_after_payment(
        self,
        db: Session,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        user_type: str,
        session_id: str,
        plan_type: Optional[str] = None,
    ) -> dict:
        """Create the account for a guest checkout and attach the paid plan to it"""
        email = email.lower()
        self.logger.info(f"register_after_payment: Entry - {email}, session: {session_id}")

        session = await asyncio.to_thread(self.billing.retrieve_checkout_session, session_id)
        if session.get('payment_status') != PAID_PAYMENT_STATUS:
            raise AuthError("Invalid or unpaid session", code="INVALID_SESSION")
        if not is_guest(session['metadata'].get('userId')):
            raise AuthError("Checkout session belongs to an existing account", code="INVALID_SESSION")

        # The plan is whatever was paid for; the request may only echo it
        paid_plan_type = session['metadata'].get('planType')
        if plan_type and plan_type != paid_plan_type:
            self.logger.warning(
                f"register_after_payment: Plan mismatch - requested {plan_type}, paid {paid_plan_type}"
            )
            raise AuthError("Plan does not match the completed checkout", code="PLAN_MISMATCH")
        plan_type = paid_plan_type

        redeemed = self.subscriptions.find_checkout_redemption(db, session_id, session.get('subscription'))
        if redeemed is not None:
            self.logger.warning(
                f"register_after_payment: Session {session_id} already redeemed by {redeemed.user_id}"
            )
            raise AuthError("This checkout session has already been used", code="SESSION_ALREADY_USED")

        subscription_status = canonical_plan(plan_type)

        uid = await asyncio.to_thread(
            self.firebase.create_user, email, password, f"{first_name} {last_name}".strip()
        )

        try:
            profile = self.profiles.create_profile(
                db,
                user_id=uid,
                email=email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                user_type=user_type,
                subscription_status=subscription_status,
                stripe_customer_id=session.get('customer'),
            )
        except Exception as e:
            self.logger.error(f"register_after_payment: Profile creation failed - {e}")
            raise AuthError("Failed to create user profile", code="PROFILE_ERROR")

        self.subscriptions.record_event(
            db,
            user_id=uid,
            event_type=SubscriptionEventType.SUBSCRIPTION_CREATED,
            stripe_customer_id=session.get('customer'),
            stripe_subscription_id=session.get('subscription'),
            plan_type=plan_type,
            amount=session.get('amount_total'),
            currency=session.get('currency'),
            payload={'sessionId': session_id, 'paymentStatus': session.get('payment_status')},
            stripe_checkout_session_id=session_id,
        )

        if session.get('subscription'):
            try:
                await asyncio.to_thread(self.billing.assign_subscription_user, session['subscription'], uid)
            except Exception as e:
                # Later webhooks for this subscription are skipped as guest until this is fixed
                self.logger.error(f"register_after_payment: Could not tag subscription with user - {e}")
                self.analytics.log_failure(action='assign_subscription_user', error=str(e), user_id=uid)

        await self._create_contact(
            email,
            first_name,
            last_name,
            user_type,
            subscription_status,
            {
                'subscription_plan': plan_type,
                'registration_source': 'Income Goal Calculator (Paid)',
                'user_id': uid,
                'stripe_customer_id': session.get('customer'),
            },
        )

        try:
            tokens = await self.firebase.sign_in_with_password(email, password)
        except AuthError as e:
            self.logger.error(f"register_after_payment: Auto sign-in failed - {e}")
            raise AuthError("Account created but signin failed. Please try logging in.", code="SIGNIN_ERROR")

        self.analytics.log_success(
            action='register_after_payment',
            user_id=uid,
            parameters={'plan_type': plan_type, 'subscription_status': subscription_status},
        )
        self.logger.info(f"register_after_payment: Success - {uid} ({subscription_status})")
        return {'user': {'id': uid, 'email': email, 'profile': profile.to_dict()}, 'session': tokens}

    async def login(self, db: Session, email: str, password: str) -> dict:
        email = email.lower()
        self.logger.info(f"login: Entry - {email}")

        tokens = await self.firebase.sign_in_with_password(email, password)

        profile = None
        try:
            profile, created = self.profiles.get_or_create_profile(db, tokens['uid'], tokens['email'] or email)
            if created:
                self.logger.info(f"login: Auto-created profile for {email}")
        except Exception as e:
            # Sign-in still succeeds; the calculator works without a profile
            self.logger.error(f"login: Profile lookup failed - {e}")

        self.analytics.log_success(action='login', user_id=tokens['uid'])
        self.logger.info(f"login: Success - {tokens['uid']}")
        return {
            'user': {
                'id': tokens['uid'],
                'email': tokens['email'],
                'profile': profile.to_dict() if profile else None,
            },
            'session': tokens,
        }

    async def logout(self, uid: str):
        await asyncio.to_thread(self.firebase.revoke_refresh_tokens, uid)

    async def refresh(self, refresh_token: str) -> dict:
        return await self.firebase.refresh_session(refresh_token)

    async def forgot_password(self, email: str):
        """Request a reset e-mail. Failures are logged, never reported, so accounts cannot be probed."""
        try:
            await self.firebase.send_password_reset_email(email.lower())
        except AuthError as e:
            self.logger.warning(f"forgot_password: Not sent - {e.code}")

    async def reset_password(self, oob_code: str, new_password: str) -> dict:
        return await self.firebase.confirm_password_reset(oob_code, new_password)

    async def resend_verification(self, id_token: str):
        await self.firebase.send_email_verification(id_token)

    async def _send_verification(self, email: str, password: str):
        try:
            tokens = await self.firebase.sign_in_with_password(email, password)
            await self.firebase.send_email_verification(tokens['access_token'])
        except AuthError as e:
            self.logger.warning(f"_send_verification: Not sent - {e.code}")

    async def _create_contact(
        self,
        email: str,
        first_name: str,
        last_name: str,
        user_type: str,
        subscription_status: str,
        custom_fields: dict,
    ):
        try:
            await self.crm.create_or_update_contact(
                email=email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                subscription_status=subscription_status,
                user_type=user_type,
                custom_fields=custom_fields,
            )
            self.logger.info(f"_create_contact: Success - {email} ({subscription_status})")
        except Exception as e:
            self.logger.error(f"_create_contact: Failure - {email}: {e}")
            self.analytics.log_failure(
                action='create_crm_contact',
                error=str(e),
                parameters={'email': email, 'subscription_status': subscription_status},
            )


def get_auth_service() -> AuthService:
    """Dependency to get auth service instance"""
    return AuthService()

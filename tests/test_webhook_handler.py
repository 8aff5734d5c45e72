"""
Tests for Stripe webhook dispatch - replay safety, guest sessions and invoices
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from incomegoals.models.subscription_event import SubscriptionEvent, SubscriptionEventType
from incomegoals.models.user import UserProfile
from incomegoals.services.subscription_service import SubscriptionService, WebhookPersistenceError
from tests.fakes import FakeBilling, FakeCRM


def _checkout_event(user_id="user_123", plan_type="monthly"):
    return {
        'id': 'evt_checkout_1',
        'type': 'checkout.session.completed',
        'data': {'object': {
            'id': 'cs_test_1',
            'customer': 'cus_1',
            'subscription': 'sub_1',
            'customer_email': 'user@example.com',
            'amount_total': 2900,
            'currency': 'usd',
            'metadata': {'userId': user_id, 'planType': plan_type},
        }},
    }


def _subscription_event(event_type, status, user_id="user_123", plan_type=None):
    metadata = {'userId': user_id}
    if plan_type:
        metadata['planType'] = plan_type
    return {
        'id': 'evt_sub_1',
        'type': event_type,
        'data': {'object': {
            'id': 'sub_1',
            'customer': 'cus_1',
            'status': status,
            'metadata': metadata,
        }},
    }


class TestCheckoutCompleted:
    """Test checkout.session.completed handling"""

    async def test_checkout_activates_plan(self, db_session, make_profile, subscription_service, fake_crm):
        # Setup
        make_profile()

        # Execute
        result = await subscription_service.handle_webhook_event(db_session, _checkout_event(plan_type="yearly"))

        # Verify
        assert result == {'handled': True, 'action': 'plan_changed'}
        profile = db_session.query(UserProfile).one()
        assert profile.subscription_status == "annual"
        assert profile.stripe_customer_id == "cus_1"
        event = db_session.query(SubscriptionEvent).one()
        assert event.event_type == SubscriptionEventType.CHECKOUT_COMPLETED.value
        assert event.stripe_subscription_id == "sub_1"
        assert event.stripe_checkout_session_id == "cs_test_1"
        assert event.amount == 2900
        assert fake_crm.contacts["user@example.com"]["tags"] == ["income-goals-calculator-annual"]

    async def test_replayed_checkout_is_stable(self, db_session, make_profile, subscription_service, fake_crm):
        """Delivering the same event twice appends a second audit row and changes nothing else"""
        # Setup
        make_profile()
        event = _checkout_event()

        # Execute
        await subscription_service.handle_webhook_event(db_session, event)
        await subscription_service.handle_webhook_event(db_session, event)

        # Verify
        assert db_session.query(SubscriptionEvent).count() == 2
        assert db_session.query(UserProfile).one().subscription_status == "monthly"
        assert fake_crm.contacts["user@example.com"]["tags"] == ["income-goals-calculator-monthly"]

    @pytest.mark.parametrize("user_id", ["guest", None])
    async def test_guest_checkout_is_skipped(self, db_session, subscription_service, fake_crm, user_id):
        # Setup
        event = _checkout_event(user_id=user_id)

        # Execute
        result = await subscription_service.handle_webhook_event(db_session, event)

        # Verify
        assert result['action'] == 'skipped_guest'
        assert db_session.query(SubscriptionEvent).count() == 0
        assert db_session.query(UserProfile).count() == 0
        assert fake_crm.tracked == []


class TestSubscriptionLifecycle:
    """Test customer.subscription.* handling"""

    async def test_created_only_records(self, db_session, make_profile, subscription_service, fake_crm):
        # Setup
        make_profile()
        event = _subscription_event('customer.subscription.created', 'active', plan_type='monthly')

        # Execute
        result = await subscription_service.handle_webhook_event(db_session, event)

        # Verify
        assert result['action'] == 'recorded'
        assert db_session.query(UserProfile).one().subscription_status == "free"
        stored = db_session.query(SubscriptionEvent).one()
        assert stored.event_type == SubscriptionEventType.SUBSCRIPTION_CREATED.value
        assert stored.plan_type == "monthly"
        assert fake_crm.tracked == []

    async def test_deleted_downgrades_to_free(self, db_session, make_profile, subscription_service, fake_crm):
        # Setup
        make_profile(subscription_status="monthly")
        event = _subscription_event('customer.subscription.deleted', 'canceled', plan_type='monthly')

        # Execute
        result = await subscription_service.handle_webhook_event(db_session, event)

        # Verify
        assert result['action'] == 'plan_changed'
        assert db_session.query(UserProfile).one().subscription_status == "free"
        assert fake_crm.contacts["user@example.com"]["tags"] == ["income-goals-calculator-free"]

    async def test_past_due_update_downgrades(self, db_session, make_profile, subscription_service):
        # Setup
        make_profile(subscription_status="annual")
        event = _subscription_event('customer.subscription.updated', 'past_due', plan_type='yearly')

        # Execute
        await subscription_service.handle_webhook_event(db_session, event)

        # Verify
        assert db_session.query(UserProfile).one().subscription_status == "free"

    async def test_active_update_without_plan_keeps_cached_plan(self, db_session, make_profile, subscription_service):
        # Setup
        make_profile(subscription_status="lifetime")
        event = _subscription_event('customer.subscription.updated', 'active')

        # Execute
        result = await subscription_service.handle_webhook_event(db_session, event)

        # Verify
        assert result['action'] == 'recorded'
        assert db_session.query(UserProfile).one().subscription_status == "lifetime"
        assert db_session.query(SubscriptionEvent).count() == 1


class TestInvoices:
    """Test invoice.* handling"""

    async def test_payment_succeeded_is_recorded(self, db_session, make_profile, mock_analytics):
        # Setup
        make_profile(subscription_status="monthly")
        billing = FakeBilling(subscriptions={
            'sub_1': {'id': 'sub_1', 'status': 'active', 'metadata': {'userId': 'user_123', 'planType': 'monthly'}},
        })
        service = SubscriptionService(billing=billing, crm=FakeCRM(), analytics=mock_analytics)
        event = {
            'id': 'evt_inv_1',
            'type': 'invoice.payment_succeeded',
            'data': {'object': {'id': 'in_1', 'subscription': 'sub_1', 'customer': 'cus_1',
                                'amount_paid': 2900, 'currency': 'usd'}},
        }

        # Execute
        result = await service.handle_webhook_event(db_session, event)

        # Verify
        assert result['action'] == 'recorded'
        stored = db_session.query(SubscriptionEvent).one()
        assert stored.event_type == SubscriptionEventType.PAYMENT_SUCCEEDED.value
        assert stored.amount == 2900
        assert stored.plan_type == "monthly"
        assert db_session.query(UserProfile).one().subscription_status == "monthly"

    async def test_payment_failed_reads_nested_subscription(self, db_session, make_profile, mock_analytics):
        # Setup
        make_profile()
        billing = FakeBilling(subscriptions={
            'sub_2': {'id': 'sub_2', 'status': 'past_due', 'metadata': {'userId': 'user_123'}},
        })
        service = SubscriptionService(billing=billing, crm=FakeCRM(), analytics=mock_analytics)
        event = {
            'id': 'evt_inv_2',
            'type': 'invoice.payment_failed',
            'data': {'object': {
                'id': 'in_2',
                'amount_due': 900,
                'parent': {'subscription_details': {'subscription': 'sub_2'}},
            }},
        }

        # Execute
        result = await service.handle_webhook_event(db_session, event)

        # Verify
        assert result['action'] == 'recorded'
        assert billing.retrieved == ['sub_2']
        stored = db_session.query(SubscriptionEvent).one()
        assert stored.event_type == SubscriptionEventType.PAYMENT_FAILED.value
        assert stored.amount == 900

    async def test_invoice_without_subscription_is_skipped(self, db_session, subscription_service, fake_billing):
        event = {'id': 'evt_inv_3', 'type': 'invoice.payment_succeeded', 'data': {'object': {'id': 'in_3'}}}

        result = await subscription_service.handle_webhook_event(db_session, event)

        assert result['action'] == 'skipped_no_subscription'
        assert fake_billing.retrieved == []


class TestUnhandledEvents:
    async def test_unknown_type_is_acknowledged(self, db_session, subscription_service):
        event = {'id': 'evt_x', 'type': 'customer.created', 'data': {'object': {'id': 'cus_1'}}}

        result = await subscription_service.handle_webhook_event(db_session, event)

        assert result == {'handled': False, 'action': 'ignored'}
        assert db_session.query(SubscriptionEvent).count() == 0


@pytest.fixture
def unavailable_db():
    """Session whose every read and write fails as if the database were down"""
    db = MagicMock()
    error = OperationalError("SELECT 1", {}, Exception("could not connect to server"))
    db.query.side_effect = error
    db.commit.side_effect = error
    return db


class TestStoreUnavailable:
    """Deliveries that store nothing must fail so Stripe redelivers them"""

    async def test_checkout_raises_when_nothing_is_stored(self, unavailable_db, subscription_service):
        # Execute
        with pytest.raises(WebhookPersistenceError):
            await subscription_service.handle_webhook_event(unavailable_db, _checkout_event(plan_type="yearly"))

        # Verify
        unavailable_db.rollback.assert_called()

    async def test_record_only_event_raises(self, unavailable_db, subscription_service):
        event = _subscription_event('customer.subscription.created', 'active', plan_type='monthly')

        with pytest.raises(WebhookPersistenceError):
            await subscription_service.handle_webhook_event(unavailable_db, event)

    async def test_crm_failure_alone_is_acknowledged(self, db_session, make_profile, mock_analytics):
        # Setup
        make_profile()
        service = SubscriptionService(billing=FakeBilling(), crm=FakeCRM(fail=True), analytics=mock_analytics)

        # Execute
        result = await service.handle_webhook_event(db_session, _checkout_event())

        # Verify
        assert result['action'] == 'plan_changed'
        assert db_session.query(UserProfile).one().subscription_status == "monthly"

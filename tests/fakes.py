"""
In-memory stand-ins for the billing and CRM collaborators
"""

from typing import Optional


class FakeBilling:
    """In-memory billing collaborator: a dict of live subscriptions by id"""

    def __init__(self, subscriptions: Optional[dict] = None, fail: bool = False):
        self.subscriptions = subscriptions or {}
        self.fail = fail
        self.retrieved = []

    def retrieve_subscription(self, subscription_id: str) -> dict:
        from incomegoals.services.billing_service import BillingError

        self.retrieved.append(subscription_id)
        if self.fail:
            raise BillingError("Stripe unavailable")
        if subscription_id not in self.subscriptions:
            raise BillingError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]


class FakeCRM:
    """In-memory CRM collaborator: contacts by email, each with a tag list"""

    def __init__(self, contacts: Optional[dict] = None, fail: bool = False):
        self.contacts = contacts if contacts is not None else {}
        self.fail = fail
        self.tracked = []

    async def track_subscription_event(self, email, subscription_status, plan_type=None, billing_status='active'):
        from incomegoals.services.highlevel_service import HighLevelError, subscription_tag

        if self.fail:
            raise HighLevelError("HighLevel unavailable")
        self.tracked.append((email, subscription_status, plan_type, billing_status))
        contact = self.contacts.get(email)
        if contact is None:
            return None
        target = subscription_tag(subscription_status)
        contact['tags'] = [t for t in contact['tags'] if not t.startswith('income-goals-calculator-')] + [target]
        return {'contact_id': contact['id'], 'tag_result': {'tag': target}}

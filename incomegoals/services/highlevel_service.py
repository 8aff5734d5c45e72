import logging
from datetime import datetime
from typing import Optional

import httpx

from incomegoals.core.config import settings
from incomegoals.models.user import SubscriptionStatus

logger = logging.getLogger(__name__)

# One tag per canonical status; a contact should carry exactly one of them
SUBSCRIPTION_TAGS = {
    SubscriptionStatus.FREE.value: 'income-goals-calculator-free',
    SubscriptionStatus.MONTHLY.value: 'income-goals-calculator-monthly',
    SubscriptionStatus.ANNUAL.value: 'income-goals-calculator-annual',
    SubscriptionStatus.LIFETIME.value: 'income-goals-calculator-lifetime',
}
TAG_ALIASES = {'yearly': SubscriptionStatus.ANNUAL.value}
ALL_SUBSCRIPTION_TAGS = frozenset(SUBSCRIPTION_TAGS.values())

CONTACT_SOURCE = 'Income Goal Calculator'


class HighLevelError(Exception):
    """HighLevel API call failed or the integration is not configured"""


def subscription_tag(status: str) -> str:
    key = (status or '').lower()
    key = TAG_ALIASES.get(key, key)
    tag = SUBSCRIPTION_TAGS.get(key)
    if not tag:
        raise ValueError(f"Unknown subscription status: {status}")
    return tag


class HighLevelService:
    """HighLevel CRM client (REST API v1) with an injectable HTTP transport"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        location_id: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.highlevel_api_key
        self.location_id = location_id if location_id is not None else settings.highlevel_location_id
        self.base_url = (base_url or settings.highlevel_api_url).rstrip('/')
        self.transport = transport
        self.logger = logging.getLogger(__name__)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.location_id)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.is_configured:
            raise HighLevelError("HighLevel integration is not configured")

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    'Authorization': f'Bearer {self.api_key}',
                    'Content-Type': 'application/json',
                },
                transport=self.transport,
                timeout=15.0,
            ) as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise HighLevelError(
                f"HighLevel {method} {path} returned {e.response.status_code}: {e.response.text[:200]}"
            )
        except httpx.HTTPError as e:
            raise HighLevelError(f"HighLevel {method} {path} failed: {e}")

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def find_contact_by_email(self, email: str) -> Optional[dict]:
        """
        Find a contact by exact (case-insensitive) email.

        The email filter sometimes returns partial matches, so results are
        re-checked, then a free-text query search is tried.
        """
        search_email = email.lower()
        self.logger.info(f"find_contact_by_email: Entry - {search_email}")

        for params in (
            {'locationId': self.location_id, 'email': search_email},
            {'locationId': self.location_id, 'query': search_email},
        ):
            data = await self._request('GET', '/contacts', params=params)
            for contact in data.get('contacts') or []:
                if (contact.get('email') or '').lower() == search_email:
                    self.logger.info(f"find_contact_by_email: Success - {contact.get('id')}")
                    return contact

        self.logger.info(f"find_contact_by_email: Not found - {search_email}")
        return None

    async def get_contact_tags(self, contact_id: str) -> list[str]:
        data = await self._request('GET', f'/contacts/{contact_id}')
        return (data.get('contact') or {}).get('tags') or []

    async def add_tag(self, contact_id: str, tag: str):
        await self._request('POST', f'/contacts/{contact_id}/tags', json={'tags': [tag]})
        self.logger.info(f"add_tag: Success - {tag} -> {contact_id}")

    async def remove_tag(self, contact_id: str, tag: str):
        await self._request('DELETE', f'/contacts/{contact_id}/tags', json={'tags': [tag]})
        self.logger.info(f"remove_tag: Success - {tag} -> {contact_id}")

    async def converge_subscription_tag(self, contact_id: str, status: str) -> dict:
        """
        Make the contact carry exactly the subscription tag for `status`.

        Stale subscription tags are removed and the target is added only when
        missing, so repeating the call is a no-op.
        """
        target = subscription_tag(status)
        self.logger.info(f"converge_subscription_tag: Entry - {contact_id} -> {target}")

        current_tags = await self.get_contact_tags(contact_id)
        stale = [tag for tag in current_tags if tag in ALL_SUBSCRIPTION_TAGS and tag != target]

        for tag in stale:
            await self.remove_tag(contact_id, tag)

        added = target not in current_tags
        if added:
            await self.add_tag(contact_id, target)

        self.logger.info(
            f"converge_subscription_tag: Success - {contact_id}, removed: {stale}, added: {added}"
        )
        return {'tag': target, 'removed': stale, 'added': added}

    async def create_or_update_contact(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        subscription_status: str = SubscriptionStatus.FREE.value,
        user_type: str = 'broker',
        custom_fields: Optional[dict] = None,
    ) -> dict:
        """Upsert a contact by email and converge its subscription tag"""
        if not email:
            raise ValueError("Email is required for HighLevel contact creation")

        self.logger.info(f"create_or_update_contact: Entry - {email}")
        existing = await self.find_contact_by_email(email)

        payload = {
            'email': email.lower(),
            'firstName': first_name or '',
            'lastName': last_name or '',
            'locationId': self.location_id,
            'customFields': {
                **(custom_fields or {}),
                'source': CONTACT_SOURCE,
                'registration_date': datetime.utcnow().isoformat(),
                'user_type': user_type,
                'subscription_status': subscription_status,
            },
        }
        if phone:
            payload['phone'] = phone

        if existing:
            contact_id = existing['id']
            data = await self._request('PUT', f'/contacts/{contact_id}', json=payload)
        else:
            data = await self._request('POST', '/contacts', json=payload)
            contact_id = (data.get('contact') or {}).get('id')

        tag_result = None
        if contact_id:
            try:
                if existing:
                    tag_result = await self.converge_subscription_tag(contact_id, subscription_status)
                else:
                    await self.add_tag(contact_id, subscription_tag(subscription_status))
                    tag_result = {'tag': subscription_tag(subscription_status), 'removed': [], 'added': True}
            except HighLevelError as e:
                # The contact itself was written; tags converge on the next sync
                self.logger.error(f"create_or_update_contact: Tagging failed - {e}")

        self.logger.info(
            f"create_or_update_contact: Success - {email} ({'updated' if existing else 'created'})"
        )
        return {
            'contact_id': contact_id,
            'created': not existing,
            'contact': data.get('contact', data),
            'tag_result': tag_result,
        }

    async def sync_profile(self, profile: dict, source: str = 'Income Goal Calculator (Sync)') -> dict:
        """Push a stored profile to its contact, tag included"""
        return await self.create_or_update_contact(
            email=profile['email'],
            first_name=profile.get('first_name'),
            last_name=profile.get('last_name'),
            subscription_status=profile.get('subscription_status') or SubscriptionStatus.FREE.value,
            user_type=profile.get('user_type') or 'broker',
            custom_fields={
                'registration_source': source,
                'user_id': profile.get('id'),
                'last_sync_date': datetime.utcnow().isoformat(),
            },
        )

    async def track_subscription_event(
        self,
        email: str,
        subscription_status: str,
        plan_type: Optional[str] = None,
        billing_status: str = 'active',
    ) -> Optional[dict]:
        """
        Record a plan change on the contact: subscription custom fields, then the tag.
        Returns None when the email has no contact.
        """
        self.logger.info(f"track_subscription_event: Entry - {email} -> {subscription_status}")

        contact = await self.find_contact_by_email(email)
        if not contact:
            self.logger.warning(f"track_subscription_event: Contact not found - {email}")
            return None

        contact_id = contact['id']
        fields_updated = True
        try:
            await self._request('PUT', f'/contacts/{contact_id}', json={
                'customFields': {
                    'subscription_plan': plan_type or subscription_status,
                    'subscription_status': billing_status,
                    'subscription_date': datetime.utcnow().isoformat(),
                },
            })
        except HighLevelError as e:
            # The tag still converges without the field update
            fields_updated = False
            self.logger.error(f"track_subscription_event: Custom field update failed - {contact_id}: {e}")

        tag_result = await self.converge_subscription_tag(contact_id, subscription_status)

        self.logger.info(f"track_subscription_event: Success - {email}")
        return {'contact_id': contact_id, 'tag_result': tag_result, 'fields_updated': fields_updated}

    async def add_note(self, contact_id: str, body: str) -> dict:
        self.logger.info(f"add_note: Entry - {contact_id}")
        data = await self._request('POST', f'/contacts/{contact_id}/notes', json={
            'body': body,
            'userId': 'system',
        })
        self.logger.info(f"add_note: Success - {contact_id}")
        return data

    async def test_connection(self) -> dict:
        """Check credentials against the locations endpoint. Never raises."""
        self.logger.info("test_connection: Entry")
        try:
            data = await self._request('GET', '/locations')
            self.logger.info("test_connection: Success")
            return {'success': True, 'locations': len(data.get('locations') or [])}
        except HighLevelError as e:
            self.logger.error(f"test_connection: Failure - {e}")
            return {'success': False, 'error': str(e)}


_highlevel_service: Optional[HighLevelService] = None


def get_highlevel_service() -> HighLevelService:
    """Get HighLevel service instance (singleton)"""
    global _highlevel_service
    if _highlevel_service is None:
        _highlevel_service = HighLevelService()
    return _highlevel_service


def set_highlevel_service(service: Optional[HighLevelService]):
    """Set HighLevel service instance (for testing)"""
    global _highlevel_service
    _highlevel_service = service

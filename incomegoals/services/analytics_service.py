import logging
from datetime import datetime
from incomegoals.core.firebase_service import get_firestore_client

logger = logging.getLogger(__name__)


class AnalyticsService:
    """Product analytics and error tracking, stored in Firestore. Never raises."""

    def __init__(self, firestore_client=None):
        self._db = firestore_client
        self.analytics_collection = 'analytics_events'
        self.errors_collection = 'error_events'
        self.logger = logging.getLogger(__name__)

    @property
    def db(self):
        # Resolved lazily so CLI commands work without an initialized Firebase app
        if self._db is None:
            self._db = get_firestore_client()
        return self._db

    def log_event(
        self,
        event_name: str,
        user_id: str = None,
        parameters: dict = None,
    ):
        """
        Log analytics event to Firestore.
        Use this for tracking user actions and feature usage.
        """
        logger.debug(f"log_event: Entry - {event_name}, user: {user_id}")

        try:
            event_data = {
                'event_name': event_name,
                'user_id': user_id,
                'parameters': parameters or {},
                'timestamp': datetime.utcnow()
            }
            self.db.collection(self.analytics_collection).add(event_data)
            logger.debug(f"log_event: Success - {event_name}")

        except Exception as e:
            # Analytics failures should not break main functionality
            logger.error(f"log_event: Failure - {e}")

    def log_error(
        self,
        error: str,
        action: str,
        user_id: str = None,
        parameters: dict = None,
    ):
        """Log a handled error for monitoring"""
        try:
            self.db.collection(self.errors_collection).add({
                'action': action,
                'user_id': user_id,
                'error_message': error,
                'parameters': parameters or {},
                'timestamp': datetime.utcnow()
            })
        except Exception as e:
            logger.error(f"log_error: Failure - {e}")

    def log_success(
        self,
        action: str,
        user_id: str = None,
        parameters: dict = None
    ):
        self.log_event(
            event_name=f'{action}_success',
            user_id=user_id,
            parameters={
                'status': 'success',
                **(parameters or {})
            }
        )

    def log_failure(
        self,
        action: str,
        error: str,
        user_id: str = None,
        parameters: dict = None
    ):
        """
        Log failed action both as an analytics event (failure rate)
        and as an error record (debugging).
        """
        self.log_event(
            event_name=f'{action}_failure',
            user_id=user_id,
            parameters={
                'status': 'failure',
                'error': error,
                **(parameters or {})
            }
        )
        self.log_error(error=error, action=action, user_id=user_id, parameters=parameters)

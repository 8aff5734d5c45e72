from sqlalchemy import Column, String, DateTime, Integer, JSON
from incomegoals.core.database import Base
from datetime import datetime
import enum


class SubscriptionEventType(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    MANUAL_FIX = "manual_fix"


class SubscriptionEvent(Base):
    """Append-only audit log of billing transitions. Rows are never updated or deleted."""
    __tablename__ = "subscription_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    stripe_checkout_session_id = Column(String, nullable=True, index=True)
    plan_type = Column(String, nullable=True)  # upstream plan type: monthly, yearly, lifetime
    amount = Column(Integer, nullable=True)  # minor currency units
    currency = Column(String, nullable=True)
    event_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'event_type': self.event_type,
            'stripe_customer_id': self.stripe_customer_id,
            'stripe_subscription_id': self.stripe_subscription_id,
            'stripe_checkout_session_id': self.stripe_checkout_session_id,
            'plan_type': self.plan_type,
            'amount': self.amount,
            'currency': self.currency,
            'event_data': self.event_data,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

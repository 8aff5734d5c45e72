from sqlalchemy import Column, String, DateTime
from incomegoals.core.database import Base
from datetime import datetime
import enum
from typing import Literal


class SubscriptionStatus(str, enum.Enum):
    """Canonical subscription status used for feature gating"""
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"


class UserType(str, enum.Enum):
    BROKER = "broker"
    INVESTOR = "investor"


UserTypeName = Literal["broker", "investor"]
PlanTypeName = Literal["monthly", "yearly", "lifetime"]


class UserProfile(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)  # Firebase UID
    email = Column(String, unique=True, index=True, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    user_type = Column(String, nullable=False, default=UserType.BROKER.value)
    subscription_status = Column(String, nullable=False, default=SubscriptionStatus.FREE.value, index=True)
    stripe_customer_id = Column(String, nullable=True, index=True)
    default_activity_role = Column(String, nullable=False, default=UserType.BROKER.value)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'user_type': self.user_type,
            'subscription_status': self.subscription_status,
            'stripe_customer_id': self.stripe_customer_id,
            'default_activity_role': self.default_activity_role,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

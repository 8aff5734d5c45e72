from sqlalchemy import Column, String, DateTime, Date, Integer, UniqueConstraint
from incomegoals.core.database import Base
from datetime import datetime
import uuid

ACTIVITY_COUNTERS = ('attempts', 'contacts', 'appointments', 'contracts', 'closings')


class DailyActivity(Base):
    __tablename__ = "daily_activities"
    __table_args__ = (
        UniqueConstraint('user_id', 'user_type', 'activity_date', name='uq_daily_activities_user_type_date'),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    user_type = Column(String, nullable=False)
    activity_date = Column(Date, nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    contacts = Column(Integer, nullable=False, default=0)
    appointments = Column(Integer, nullable=False, default=0)
    contracts = Column(Integer, nullable=False, default=0)
    closings = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user_type': self.user_type,
            'activity_date': self.activity_date.isoformat(),
            'attempts': self.attempts,
            'contacts': self.contacts,
            'appointments': self.appointments,
            'contracts': self.contracts,
            'closings': self.closings,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

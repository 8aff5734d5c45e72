from sqlalchemy import Column, String, DateTime, JSON, UniqueConstraint
from incomegoals.core.database import Base
from datetime import datetime
import uuid


class Goal(Base):
    __tablename__ = "user_goals"
    __table_args__ = (
        UniqueConstraint('user_id', 'user_type', name='uq_user_goals_user_type'),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    user_type = Column(String, nullable=False)  # 'broker' or 'investor'
    goal_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user_type': self.user_type,
            'goal_data': self.goal_data,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from incomegoals.core.database import upsert
from incomegoals.models.goal import Goal
from incomegoals.services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)


class GoalService:
    def __init__(self):
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def save_goals(self, db: Session, user_id: str, user_type: str, goal_data: dict) -> Goal:
        """One goal record per (user, user type); saving again replaces the data"""
        self.logger.info(f"save_goals: Entry - user: {user_id}, type: {user_type}")

        try:
            upsert(
                db,
                Goal,
                {
                    'user_id': user_id,
                    'user_type': user_type,
                    'goal_data': goal_data,
                    'updated_at': datetime.utcnow(),
                },
                conflict_columns=['user_id', 'user_type'],
                update_columns=['goal_data', 'updated_at'],
            )
            db.commit()

            goal = db.query(Goal).filter(Goal.user_id == user_id, Goal.user_type == user_type).one()
            db.refresh(goal)

            self.analytics.log_success(action='save_goals', user_id=user_id, parameters={'user_type': user_type})
            self.logger.info(f"save_goals: Success - {goal.id}")
            return goal
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='save_goals', error=str(e), user_id=user_id)
            self.logger.error(f"save_goals: Failure - {e}")
            raise

    def load_goals(self, db: Session, user_id: str, user_type: Optional[str] = None) -> Optional[Goal]:
        """Goals for a user type, or the most recently updated ones when no type is given"""
        self.logger.info(f"load_goals: Entry - user: {user_id}, type: {user_type}")

        query = db.query(Goal).filter(Goal.user_id == user_id)
        if user_type:
            query = query.filter(Goal.user_type == user_type)
        goal = query.order_by(Goal.updated_at.desc()).first()

        self.logger.info(f"load_goals: Success - found: {goal is not None}")
        return goal

    def list_goals(self, db: Session, user_id: str) -> list[Goal]:
        return db.query(Goal).filter(Goal.user_id == user_id).order_by(Goal.user_type).all()

    def delete_goals(self, db: Session, user_id: str, user_type: Optional[str] = None) -> int:
        """Delete one user type's goals, or all of the user's goals"""
        self.logger.info(f"delete_goals: Entry - user: {user_id}, type: {user_type}")

        try:
            query = db.query(Goal).filter(Goal.user_id == user_id)
            if user_type:
                query = query.filter(Goal.user_type == user_type)
            deleted = query.delete(synchronize_session=False)
            db.commit()

            self.analytics.log_success(action='delete_goals', user_id=user_id, parameters={'deleted': deleted})
            self.logger.info(f"delete_goals: Success - deleted: {deleted}")
            return deleted
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='delete_goals', error=str(e), user_id=user_id)
            self.logger.error(f"delete_goals: Failure - {e}")
            raise


def get_goal_service() -> GoalService:
    """Dependency to get goal service instance"""
    return GoalService()

import csv
import io
import json
import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from incomegoals.models.daily_activity import ACTIVITY_COUNTERS, DailyActivity
from incomegoals.models.goal import Goal
from incomegoals.models.user import UserProfile
from incomegoals.services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ('csv', 'json')
EXPORT_TITLE = 'Income Goal Calculator - Data Export'
NO_ACTIVITIES_MESSAGE = 'No activities recorded yet. Start tracking your daily activities to see your progress!'


def export_filename(export_format: str, today: Optional[date] = None) -> str:
    return f"Income-Goal-Data-{(today or date.today()).isoformat()}.{export_format}"


def _format_date(value) -> str:
    if value is None:
        return 'N/A'
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()


class ExportService:
    def __init__(self):
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def collect(self, db: Session, user_id: str) -> dict:
        """Profile, goals (newest first) and activities (newest first) for one user"""
        profile = db.query(UserProfile).filter(UserProfile.id == user_id).first()
        goals = db.query(Goal).filter(Goal.user_id == user_id).order_by(Goal.created_at.desc()).all()
        activities = (
            db.query(DailyActivity)
            .filter(DailyActivity.user_id == user_id)
            .order_by(DailyActivity.activity_date.desc())
            .all()
        )
        return {'profile': profile, 'goals': goals, 'activities': activities}

    def export_json(self, db: Session, user_id: str) -> str:
        self.logger.info(f"export_json: Entry - {user_id}")
        data = self.collect(db, user_id)
        document = {
            'exportDate': datetime.utcnow().isoformat(),
            'profile': data['profile'].to_dict() if data['profile'] else None,
            'goals': [goal.to_dict() for goal in data['goals']],
            'activities': [activity.to_dict() for activity in data['activities']],
        }
        self.analytics.log_success(action='export_data', user_id=user_id, parameters={'format': 'json'})
        self.logger.info(f"export_json: Success - {user_id}")
        return json.dumps(document, indent=2, default=str)

    def export_csv(self, db: Session, user_id: str) -> str:
        """Human-readable CSV: summary header, goals section, activity section"""
        self.logger.info(f"export_csv: Entry - {user_id}")
        data = self.collect(db, user_id)
        profile, goals, activities = data['profile'], data['goals'], data['activities']

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator='\n')

        writer.writerow([EXPORT_TITLE])
        writer.writerow([f"Export Date: {date.today().isoformat()}"])
        writer.writerow([f"Account Created: {_format_date(profile.created_at) if profile else 'N/A'}"])
        writer.writerow([f"Total Goals: {len(goals)}"])
        writer.writerow([f"Total Activities: {len(activities)}"])
        writer.writerow([])

        if goals:
            writer.writerow(['=== YOUR INCOME GOALS ==='])
            writer.writerow(['User Type', 'Created Date', 'Updated Date', 'Goal Data'])
            for goal in goals:
                writer.writerow([
                    goal.user_type,
                    _format_date(goal.created_at),
                    _format_date(goal.updated_at),
                    json.dumps(goal.goal_data or {}, sort_keys=True),
                ])
            writer.writerow([])

        writer.writerow(['=== YOUR ACTIVITY TRACKING ==='])
        if activities:
            writer.writerow(
                ['Date', 'User Type'] + [counter.capitalize() for counter in ACTIVITY_COUNTERS] + ['Total Activities']
            )
            for activity in activities:
                counts = [int(getattr(activity, counter) or 0) for counter in ACTIVITY_COUNTERS]
                writer.writerow([_format_date(activity.activity_date), activity.user_type] + counts + [sum(counts)])
        else:
            writer.writerow([NO_ACTIVITIES_MESSAGE])

        self.analytics.log_success(action='export_data', user_id=user_id, parameters={'format': 'csv'})
        self.logger.info(f"export_csv: Success - goals: {len(goals)}, activities: {len(activities)}")
        return buffer.getvalue()


def get_export_service() -> ExportService:
    """Dependency to get export service instance"""
    return ExportService()

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from incomegoals.core.database import upsert
from incomegoals.models.daily_activity import ACTIVITY_COUNTERS, DailyActivity
from incomegoals.services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100
STATS_LOOKBACK_LIMIT = 365
DEFAULT_STATS_WINDOW_DAYS = 30

# (name, numerator, denominator)
CONVERSION_STAGES = (
    ('attemptToContact', 'contacts', 'attempts'),
    ('contactToAppointment', 'appointments', 'contacts'),
    ('appointmentToContract', 'contracts', 'appointments'),
    ('contractToClosing', 'closings', 'contracts'),
)

_ONE_DECIMAL = Decimal('0.1')


def round_one_decimal(value: Decimal) -> float:
    """Round half up to one decimal place"""
    return float(value.quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


def _field(record: Any, name: str):
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def empty_stats() -> dict:
    stats = {'totalDays': 0}
    for counter in ACTIVITY_COUNTERS:
        stats[f'average{counter.capitalize()}'] = 0
        stats[f'total{counter.capitalize()}'] = 0
    stats['conversionRates'] = {name: 0 for name, _, _ in CONVERSION_STAGES}
    return stats


def compute_activity_stats(
    records: Iterable[Any],
    window_days: int = DEFAULT_STATS_WINDOW_DAYS,
    today: Optional[date] = None,
) -> dict:
    """
    Summarize daily activity over a trailing window.

    totalDays counts records (days with logged activity), not calendar days.
    Averages are per logged day; conversion rates are stage-to-stage
    percentages, 0 when the earlier stage is 0. All rounded half up to one
    decimal place.
    """
    cutoff = (today or date.today()) - timedelta(days=window_days)
    in_window = [r for r in records if _as_date(_field(r, 'activity_date')) >= cutoff]

    if not in_window:
        return empty_stats()

    total_days = len(in_window)
    totals = {
        counter: sum(int(_field(r, counter) or 0) for r in in_window)
        for counter in ACTIVITY_COUNTERS
    }

    stats = {'totalDays': total_days}
    for counter in ACTIVITY_COUNTERS:
        stats[f'average{counter.capitalize()}'] = round_one_decimal(Decimal(totals[counter]) / Decimal(total_days))
    for counter in ACTIVITY_COUNTERS:
        stats[f'total{counter.capitalize()}'] = totals[counter]

    rates = {}
    for name, numerator, denominator in CONVERSION_STAGES:
        if totals[denominator] == 0:
            rates[name] = 0
        else:
            rates[name] = round_one_decimal(
                Decimal(totals[numerator]) * 100 / Decimal(totals[denominator])
            )
    stats['conversionRates'] = rates
    return stats


class ActivityService:
    def __init__(self):
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def save_activity(
        self,
        db: Session,
        user_id: str,
        activity_date: date,
        user_type: str,
        counts: dict,
    ) -> DailyActivity:
        """Idempotent upsert on (user, user type, date); the last write wins"""
        self.logger.info(f"save_activity: Entry - user: {user_id}, date: {activity_date}, type: {user_type}")

        try:
            now = datetime.utcnow()
            values = {
                'user_id': user_id,
                'user_type': user_type,
                'activity_date': activity_date,
                'updated_at': now,
            }
            for counter in ACTIVITY_COUNTERS:
                values[counter] = int(counts.get(counter) or 0)

            upsert(
                db,
                DailyActivity,
                values,
                conflict_columns=['user_id', 'user_type', 'activity_date'],
                update_columns=list(ACTIVITY_COUNTERS) + ['updated_at'],
            )
            db.commit()

            activity = db.query(DailyActivity).filter(
                DailyActivity.user_id == user_id,
                DailyActivity.user_type == user_type,
                DailyActivity.activity_date == activity_date,
            ).one()
            # Row may be cached in the identity map from an earlier read
            db.refresh(activity)

            self.analytics.log_success(
                action='save_activity',
                user_id=user_id,
                parameters={'user_type': user_type, 'date': activity_date.isoformat()},
            )
            self.logger.info(f"save_activity: Success - {activity.id}")
            return activity
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='save_activity', error=str(e), user_id=user_id)
            self.logger.error(f"save_activity: Failure - {e}")
            raise

    def list_activities(
        self,
        db: Session,
        user_id: str,
        limit: int = DEFAULT_LIST_LIMIT,
        user_type: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[DailyActivity]:
        """Newest first, optionally filtered by user type and inclusive date range"""
        self.logger.info(f"list_activities: Entry - user: {user_id}, limit: {limit}, type: {user_type}")

        try:
            query = db.query(DailyActivity).filter(DailyActivity.user_id == user_id)
            if user_type:
                query = query.filter(DailyActivity.user_type == user_type)
            if start_date:
                query = query.filter(DailyActivity.activity_date >= start_date)
            if end_date:
                query = query.filter(DailyActivity.activity_date <= end_date)

            activities = query.order_by(DailyActivity.activity_date.desc()).limit(limit).all()
            self.logger.info(f"list_activities: Success - {len(activities)} activities")
            return activities
        except Exception as e:
            self.analytics.log_failure(action='list_activities', error=str(e), user_id=user_id)
            self.logger.error(f"list_activities: Failure - {e}")
            raise

    def get_stats(
        self,
        db: Session,
        user_id: str,
        window_days: int = DEFAULT_STATS_WINDOW_DAYS,
        user_type: Optional[str] = None,
        today: Optional[date] = None,
    ) -> dict:
        self.logger.info(f"get_stats: Entry - user: {user_id}, window: {window_days}")
        activities = self.list_activities(db, user_id, limit=STATS_LOOKBACK_LIMIT, user_type=user_type)
        stats = compute_activity_stats(activities, window_days=window_days, today=today)
        self.logger.info(f"get_stats: Success - user: {user_id}, days: {stats['totalDays']}")
        return stats


def get_activity_service() -> ActivityService:
    """Dependency to get activity service instance"""
    return ActivityService()

"""
Tests for daily activity tracking and the statistics calculation
"""

from datetime import date

import pytest

from incomegoals.models.daily_activity import DailyActivity
from incomegoals.services.activity_service import ActivityService, compute_activity_stats, empty_stats


def _record(day, attempts=0, contacts=0, appointments=0, contracts=0, closings=0):
    return {
        'activity_date': day,
        'attempts': attempts,
        'contacts': contacts,
        'appointments': appointments,
        'contracts': contracts,
        'closings': closings,
    }


class TestComputeActivityStats:
    """Test the pure statistics function"""

    def test_no_records_gives_zero_summary(self):
        stats = compute_activity_stats([], today=date(2024, 3, 31))

        assert stats == empty_stats()
        assert stats['totalDays'] == 0
        assert stats['averageAttempts'] == 0
        assert stats['conversionRates'] == {
            'attemptToContact': 0,
            'contactToAppointment': 0,
            'appointmentToContract': 0,
            'contractToClosing': 0,
        }

    def test_single_day_funnel(self):
        """10 attempts, 5 contacts, 2 appointments, 1 contract, 1 closing"""
        # Setup
        records = [_record(date(2024, 3, 30), 10, 5, 2, 1, 1)]

        # Execute
        stats = compute_activity_stats(records, today=date(2024, 3, 31))

        # Verify
        assert stats['totalDays'] == 1
        assert stats['totalAttempts'] == 10
        assert stats['averageContacts'] == 5.0
        assert stats['conversionRates'] == {
            'attemptToContact': 50.0,
            'contactToAppointment': 40.0,
            'appointmentToContract': 50.0,
            'contractToClosing': 100.0,
        }

    def test_zero_denominator_rate_is_zero(self):
        records = [_record(date(2024, 3, 30), attempts=0, contacts=3)]

        stats = compute_activity_stats(records, today=date(2024, 3, 31))

        assert stats['conversionRates']['attemptToContact'] == 0
        assert stats['conversionRates']['contactToAppointment'] == 0.0

    def test_window_includes_cutoff_day(self):
        """Records on or after today - window are counted; older ones are not"""
        # Setup
        records = [
            _record(date(2024, 3, 1), attempts=4),
            _record(date(2024, 2, 29), attempts=100),
        ]

        # Execute
        stats = compute_activity_stats(records, window_days=30, today=date(2024, 3, 31))

        # Verify
        assert stats['totalDays'] == 1
        assert stats['totalAttempts'] == 4

    def test_days_without_records_are_not_counted(self):
        records = [
            _record(date(2024, 3, 1), attempts=10),
            _record(date(2024, 3, 20), attempts=20),
        ]

        stats = compute_activity_stats(records, today=date(2024, 3, 31))

        assert stats['totalDays'] == 2
        assert stats['averageAttempts'] == 15.0

    def test_rounds_half_up(self):
        # Setup: 1 attempt over 4 days averages 0.25
        records = [_record(date(2024, 3, d), attempts=1 if d == 1 else 0, contacts=1 if d == 1 else 0) for d in (1, 2, 3, 4)]
        records.append(_record(date(2024, 3, 5), attempts=2))

        # Execute
        stats = compute_activity_stats(records, today=date(2024, 3, 31))

        # Verify: 3 attempts / 5 days = 0.6, 1 contact / 3 attempts = 33.333..%
        assert stats['averageAttempts'] == 0.6
        assert stats['conversionRates']['attemptToContact'] == 33.3

        quarter = compute_activity_stats(records[:4], today=date(2024, 3, 31))
        assert quarter['averageAttempts'] == 0.3

    def test_accepts_iso_strings(self):
        stats = compute_activity_stats([_record('2024-03-30', attempts=1)], today=date(2024, 3, 31))

        assert stats['totalDays'] == 1


class TestActivityService:
    """Test persistence of daily activity"""

    @pytest.fixture
    def service(self, mock_analytics):
        service = ActivityService()
        service.analytics = mock_analytics
        return service

    def test_save_twice_keeps_one_row(self, db_session, service):
        """Same (user, type, date) is updated in place with the last write"""
        # Setup
        day = date(2024, 3, 15)

        # Execute
        service.save_activity(db_session, "user_123", day, "broker", {'attempts': 5, 'contacts': 2})
        saved = service.save_activity(db_session, "user_123", day, "broker", {'attempts': 8})

        # Verify
        assert db_session.query(DailyActivity).count() == 1
        assert saved.attempts == 8
        assert saved.contacts == 0

    def test_user_types_are_separate_rows(self, db_session, service):
        day = date(2024, 3, 15)

        service.save_activity(db_session, "user_123", day, "broker", {'attempts': 5})
        service.save_activity(db_session, "user_123", day, "investor", {'attempts': 3})

        assert db_session.query(DailyActivity).count() == 2

    def test_list_filters_and_orders(self, db_session, service):
        # Setup
        for day in (1, 5, 10, 20):
            service.save_activity(db_session, "user_123", date(2024, 3, day), "broker", {'attempts': day})
        service.save_activity(db_session, "user_123", date(2024, 3, 12), "investor", {'attempts': 1})
        service.save_activity(db_session, "other_user", date(2024, 3, 12), "broker", {'attempts': 1})

        # Execute
        ranged = service.list_activities(
            db_session, "user_123", user_type="broker",
            start_date=date(2024, 3, 5), end_date=date(2024, 3, 10),
        )
        limited = service.list_activities(db_session, "user_123", limit=2)

        # Verify
        assert [a.activity_date for a in ranged] == [date(2024, 3, 10), date(2024, 3, 5)]
        assert [a.activity_date for a in limited] == [date(2024, 3, 20), date(2024, 3, 12)]

    def test_get_stats_uses_stored_rows(self, db_session, service):
        # Setup
        service.save_activity(db_session, "user_123", date(2024, 3, 30), "broker",
                              {'attempts': 10, 'contacts': 5, 'appointments': 2, 'contracts': 1, 'closings': 1})
        service.save_activity(db_session, "user_123", date(2024, 3, 30), "investor", {'attempts': 50})

        # Execute
        stats = service.get_stats(db_session, "user_123", user_type="broker", today=date(2024, 3, 31))

        # Verify
        assert stats['totalDays'] == 1
        assert stats['conversionRates']['contactToAppointment'] == 40.0

    def test_save_failure_is_logged_and_raised(self, db_session, service):
        with pytest.raises(Exception):
            service.save_activity(db_session, "user_123", date(2024, 3, 30), "broker", {'attempts': 'many'})

        service.analytics.log_failure.assert_called_once()

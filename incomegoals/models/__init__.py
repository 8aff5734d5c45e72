from incomegoals.models.user import UserProfile, SubscriptionStatus, UserType, UserTypeName, PlanTypeName
from incomegoals.models.goal import Goal
from incomegoals.models.daily_activity import DailyActivity, ACTIVITY_COUNTERS
from incomegoals.models.subscription_event import SubscriptionEvent, SubscriptionEventType

__all__ = ["UserProfile", "SubscriptionStatus", "UserType", "UserTypeName", "PlanTypeName", "Goal", "DailyActivity", "ACTIVITY_COUNTERS", "SubscriptionEvent", "SubscriptionEventType"]

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from incomegoals.models.user import SubscriptionStatus, UserProfile, UserType
from incomegoals.services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)


class ProfileService:
    def __init__(self):
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def get_profile(self, db: Session, user_id: str) -> Optional[UserProfile]:
        return db.query(UserProfile).filter(UserProfile.id == user_id).first()

    def get_profile_by_email(self, db: Session, email: str) -> Optional[UserProfile]:
        return db.query(UserProfile).filter(UserProfile.email == email.lower()).first()

    def create_profile(
        self,
        db: Session,
        user_id: str,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        user_type: str = UserType.BROKER.value,
        subscription_status: str = SubscriptionStatus.FREE.value,
        stripe_customer_id: Optional[str] = None,
    ) -> UserProfile:
        self.logger.info(f"create_profile: Entry - {user_id}")

        try:
            profile = UserProfile(
                id=user_id,
                email=email.lower(),
                first_name=first_name,
                last_name=last_name,
                user_type=user_type,
                subscription_status=subscription_status,
                stripe_customer_id=stripe_customer_id,
                default_activity_role=user_type,
            )
            db.add(profile)
            db.commit()
            db.refresh(profile)

            self.analytics.log_success(
                action='create_profile',
                user_id=user_id,
                parameters={'subscription_status': subscription_status},
            )
            self.logger.info(f"create_profile: Success - {user_id}")
            return profile
        except IntegrityError as e:
            db.rollback()
            self.logger.error(f"create_profile: Duplicate - {e}")
            raise ValueError(f"Profile already exists for {email}")
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='create_profile', error=str(e), user_id=user_id)
            self.logger.error(f"create_profile: Failure - {e}")
            raise

    def get_or_create_profile(self, db: Session, user_id: str, email: str) -> tuple[UserProfile, bool]:
        """Profiles missing at login (accounts created outside the API) are created lazily as free"""
        profile = self.get_profile(db, user_id)
        if profile:
            return profile, False
        self.logger.info(f"get_or_create_profile: Creating missing profile - {user_id}")
        return self.create_profile(db, user_id, email), True

    def update_names(
        self,
        db: Session,
        user_id: str,
        first_name: Optional[str],
        last_name: Optional[str],
    ) -> UserProfile:
        self.logger.info(f"update_names: Entry - {user_id}")

        profile = self.get_profile(db, user_id)
        if not profile:
            raise ValueError("Profile not found")

        try:
            if first_name is not None:
                profile.first_name = first_name
            if last_name is not None:
                profile.last_name = last_name
            profile.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(profile)
            self.logger.info(f"update_names: Success - {user_id}")
            return profile
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='update_profile', error=str(e), user_id=user_id)
            self.logger.error(f"update_names: Failure - {e}")
            raise

    def update_activity_role(self, db: Session, user_id: str, role: str) -> UserProfile:
        self.logger.info(f"update_activity_role: Entry - {user_id} -> {role}")

        profile = self.get_profile(db, user_id)
        if not profile:
            raise ValueError("Profile not found")

        try:
            profile.default_activity_role = role
            profile.updated_at = datetime.utcnow()
            db.commit()
            db.refresh(profile)
            self.logger.info(f"update_activity_role: Success - {user_id}")
            return profile
        except Exception as e:
            db.rollback()
            self.logger.error(f"update_activity_role: Failure - {e}")
            raise


def get_profile_service() -> ProfileService:
    """Dependency to get profile service instance"""
    return ProfileService()

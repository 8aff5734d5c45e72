import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from incomegoals.core.database import get_db
from incomegoals.core.middleware import get_current_user
from incomegoals.models.user import UserTypeName
from incomegoals.services.activity_service import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_STATS_WINDOW_DAYS,
    STATS_LOOKBACK_LIMIT,
    ActivityService,
    get_activity_service,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class ActivityCounts(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempts: int = Field(default=0, ge=0)
    contacts: int = Field(default=0, ge=0)
    appointments: int = Field(default=0, ge=0)
    contracts: int = Field(default=0, ge=0)
    closings: int = Field(default=0, ge=0)
    user_type: UserTypeName = Field(default='broker', alias='userType')


class SaveActivityRequest(ActivityCounts):
    activity_date: date = Field(alias='date')


def _activity_error(message: str, code: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": message, "code": code},
    )


def _counts(request: ActivityCounts) -> dict:
    return request.model_dump(include={'attempts', 'contacts', 'appointments', 'contracts', 'closings'})


@router.post("/save")
async def save_activity(
    request: SaveActivityRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
):
    user_id = current_user['uid']
    logger.info(f"save_activity: Entry - user: {user_id}, date: {request.activity_date}")

    try:
        activity = activity_service.save_activity(
            db, user_id, request.activity_date, request.user_type, _counts(request)
        )
    except Exception as e:
        logger.error(f"save_activity: Failure - {e}")
        raise _activity_error("Failed to save activity", "SAVE_ERROR")

    logger.info(f"save_activity: Success - user: {user_id}")
    return {"message": "Activity saved successfully", "activity": activity.to_dict()}


@router.get("/list")
async def list_activities(
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=STATS_LOOKBACK_LIMIT),
    start_date: Optional[date] = Query(default=None, alias='startDate'),
    end_date: Optional[date] = Query(default=None, alias='endDate'),
    user_type: Optional[UserTypeName] = Query(default=None, alias='userType'),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
):
    user_id = current_user['uid']
    logger.info(f"list_activities: Entry - user: {user_id}")

    try:
        activities = activity_service.list_activities(
            db,
            user_id,
            limit=limit,
            user_type=user_type,
            start_date=start_date,
            end_date=end_date,
        )
    except Exception as e:
        logger.error(f"list_activities: Failure - {e}")
        raise _activity_error("Failed to load activities", "LOAD_ERROR")

    logger.info(f"list_activities: Success - {len(activities)} activities")
    return {
        "message": "Activities loaded successfully",
        "activities": [activity.to_dict() for activity in activities],
    }


@router.get("/stats")
async def get_activity_stats(
    period: int = Query(default=DEFAULT_STATS_WINDOW_DAYS, ge=1, le=STATS_LOOKBACK_LIMIT),
    user_type: Optional[UserTypeName] = Query(default=None, alias='userType'),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
):
    """Averages, totals and conversion rates over the last `period` days"""
    user_id = current_user['uid']
    logger.info(f"get_activity_stats: Entry - user: {user_id}, period: {period}")

    try:
        stats = activity_service.get_stats(db, user_id, window_days=period, user_type=user_type)
    except Exception as e:
        logger.error(f"get_activity_stats: Failure - {e}")
        raise _activity_error("Failed to load activity statistics", "STATS_ERROR")

    if stats['totalDays'] == 0:
        message = f"No activity data found for the last {period} days"
    else:
        message = "Activity statistics loaded successfully"

    logger.info(f"get_activity_stats: Success - user: {user_id}")
    return {"message": message, "stats": stats, "period": f"{period} days"}


@router.put("/update/{activity_date}")
async def update_activity(
    activity_date: date,
    request: ActivityCounts,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
):
    user_id = current_user['uid']
    logger.info(f"update_activity: Entry - user: {user_id}, date: {activity_date}")

    try:
        activity = activity_service.save_activity(
            db, user_id, activity_date, request.user_type, _counts(request)
        )
    except Exception as e:
        logger.error(f"update_activity: Failure - {e}")
        raise _activity_error("Failed to update activity", "UPDATE_ERROR")

    logger.info(f"update_activity: Success - user: {user_id}")
    return {"message": "Activity updated successfully", "activity": activity.to_dict()}

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from incomegoals.core.database import get_db
from incomegoals.core.middleware import get_current_user
from incomegoals.models.user import UserTypeName
from incomegoals.services.goal_service import GoalService, get_goal_service

router = APIRouter()
logger = logging.getLogger(__name__)


class SaveGoalsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_type: UserTypeName = Field(alias='userType')
    goal_data: dict[str, Any] = Field(alias='goalData')


def _goal_error(message: str, code: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": message, "code": code},
    )


def _save(db: Session, user_id: str, request: SaveGoalsRequest, goal_service: GoalService):
    if not request.goal_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "User type and goal data are required", "code": "VALIDATION_ERROR"},
        )
    return goal_service.save_goals(db, user_id, request.user_type, request.goal_data)


@router.post("/save")
async def save_goals(
    request: SaveGoalsRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    goal_service: GoalService = Depends(get_goal_service),
):
    user_id = current_user['uid']
    logger.info(f"save_goals: Entry - user: {user_id}, type: {request.user_type}")

    try:
        goal = _save(db, user_id, request, goal_service)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"save_goals: Failure - {e}")
        raise _goal_error("Failed to save goals", "SAVE_ERROR")

    logger.info(f"save_goals: Success - user: {user_id}")
    return {"message": "Goals saved successfully", "goals": goal.to_dict()}


@router.get("/load")
async def load_goals(
    type: Optional[UserTypeName] = Query(default=None),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    goal_service: GoalService = Depends(get_goal_service),
):
    """Goals for one user type, or the most recently updated goals when no type is given"""
    user_id = current_user['uid']
    logger.info(f"load_goals: Entry - user: {user_id}, type: {type}")

    try:
        goal = goal_service.load_goals(db, user_id, type)
    except Exception as e:
        logger.error(f"load_goals: Failure - {e}")
        raise _goal_error("Failed to load goals", "LOAD_ERROR")

    if goal is None:
        return {"message": "No goals found", "goals": None}

    logger.info(f"load_goals: Success - user: {user_id}")
    return {"message": "Goals loaded successfully", "goals": goal.to_dict()}


@router.put("/update")
async def update_goals(
    request: SaveGoalsRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    goal_service: GoalService = Depends(get_goal_service),
):
    user_id = current_user['uid']
    logger.info(f"update_goals: Entry - user: {user_id}, type: {request.user_type}")

    try:
        goal = _save(db, user_id, request, goal_service)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"update_goals: Failure - {e}")
        raise _goal_error("Failed to update goals", "UPDATE_ERROR")

    logger.info(f"update_goals: Success - user: {user_id}")
    return {"message": "Goals updated successfully", "goals": goal.to_dict()}


@router.delete("/delete")
async def delete_goals(
    type: Optional[UserTypeName] = Query(default=None),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    goal_service: GoalService = Depends(get_goal_service),
):
    """Delete one user type's goals, or all of them when no type is given"""
    user_id = current_user['uid']
    logger.info(f"delete_goals: Entry - user: {user_id}, type: {type}")

    try:
        deleted = goal_service.delete_goals(db, user_id, type)
    except Exception as e:
        logger.error(f"delete_goals: Failure - {e}")
        raise _goal_error("Failed to delete goals", "DELETE_ERROR")

    logger.info(f"delete_goals: Success - user: {user_id}, deleted: {deleted}")
    return {"message": "Goals deleted successfully", "deleted": deleted}

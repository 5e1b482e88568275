"""
Plan limits and feature flags for subscription plans.
"""

from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from .auth import get_current_user
from .models import User, WorkOrder

DEFAULT_PLAN = "free"

# None means unlimited
PLAN_QUOTAS = {
    "free": {"work_orders_per_month": 1000},
    "professional": {"work_orders_per_month": None},
    "enterprise": {"work_orders_per_month": None},
}

PLAN_FEATURES = {
    "free": {
        "accounting_sync": False,
        "advanced_reporting": False,
        "webhooks": False,
    },
    "professional": {
        "accounting_sync": True,
        "advanced_reporting": True,
        "webhooks": False,
    },
    "enterprise": {
        "accounting_sync": True,
        "advanced_reporting": True,
        "webhooks": True,
    },
}


def get_plan(user: User) -> str:
    plan = (user.plan or DEFAULT_PLAN).lower()
    return plan if plan in PLAN_FEATURES else DEFAULT_PLAN


def has_feature(user: User, feature: str) -> bool:
    """Whether the user's plan includes a feature"""
    return PLAN_FEATURES[get_plan(user)].get(feature, False)


def get_quota(plan: Optional[str], quota: str) -> Optional[int]:
    """Limit for a quota on a plan. Returns None for unlimited."""
    return PLAN_QUOTAS.get((plan or DEFAULT_PLAN).lower(), PLAN_QUOTAS[DEFAULT_PLAN]).get(quota)


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def get_usage(user: User, db: Session, quota: str) -> int:
    if quota == "work_orders_per_month":
        return (
            db.query(func.count(WorkOrder.id))
            .filter(
                WorkOrder.user_id == user.id,
                WorkOrder.created_at >= _month_start(datetime.utcnow()),
            )
            .scalar()
            or 0
        )
    raise ValueError(f"Unknown quota: {quota}")


def has_exceeded_quota(user: User, db: Session, quota: str) -> bool:
    """Whether the user has used up a quota for the current period"""
    limit = get_quota(get_plan(user), quota)
    if limit is None:
        return False
    return get_usage(user, db, quota) >= limit


def require_feature(feature: str):
    """Dependency factory rejecting users whose plan lacks ``feature`` with 403"""

    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not has_feature(current_user, feature):
            raise HTTPException(
                status_code=403,
                detail=f"Your plan does not include {feature.replace('_', ' ')}. Please upgrade.",
            )
        return current_user

    return dependency

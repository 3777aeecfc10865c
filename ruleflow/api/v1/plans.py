"""
Plan capability endpoints for the current owner.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...schemas.plan import CapabilityProfileOut, EnforcementResultOut, PlanUpdate
from ...services.capabilities import CapabilityProfile, count_active_rules, get_owner_capabilities
from ...services.enforcement import set_owner_plan


router = APIRouter(prefix="/api/v1/plans", tags=["plans"])


def _profile_out(db: Session, owner_id: str, caps: CapabilityProfile) -> CapabilityProfileOut:
    return CapabilityProfileOut(**caps.as_dict(), active_rules=count_active_rules(db, owner_id))


@router.get("/me", response_model=CapabilityProfileOut)
def get_my_plan(
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> CapabilityProfileOut:
    return _profile_out(db, user.owner_id, get_owner_capabilities(db, user.owner_id))


@router.put("/me", response_model=EnforcementResultOut)
def update_my_plan(
    payload: PlanUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> EnforcementResultOut:
    result = set_owner_plan(
        db,
        user.owner_id,
        payload.plan_type,
        billing_status=payload.billing_status,
        account_type=payload.account_type,
        email=payload.email,
        email_from=payload.email_from,
    )
    return EnforcementResultOut(
        suspended=result.suspended,
        restored=result.restored,
        capabilities=_profile_out(db, user.owner_id, result.capabilities),
    )

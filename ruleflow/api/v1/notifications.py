"""
In-product notification endpoints (written by dashboard_alert actions).
"""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user
from ...core.db import get_db
from ...core.pagination import DEFAULT_PAGE_SIZE, clamp_page_size, set_pagination_headers
from ...models.notification import DashboardNotification
from ...schemas.notifications import DashboardNotificationOut


router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("", response_model=List[DashboardNotificationOut])
def list_notifications(
    response: Response,
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> List[DashboardNotification]:
    page_size = clamp_page_size(page_size)
    query = db.query(DashboardNotification).filter(DashboardNotification.owner_id == user.owner_id)
    if unread_only:
        query = query.filter(DashboardNotification.is_read.is_(False))
    total = query.count()
    items = (
        query.order_by(DashboardNotification.created_at.desc(), DashboardNotification.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    set_pagination_headers(response, total=total, page=page, page_size=page_size)
    return items


@router.post("/{notification_id}/read", response_model=DashboardNotificationOut)
def mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> DashboardNotification:
    note = (
        db.query(DashboardNotification)
        .filter(DashboardNotification.id == notification_id, DashboardNotification.owner_id == user.owner_id)
        .first()
    )
    if note is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    if not note.is_read:
        note.is_read = True
        db.add(note)
        db.commit()
        db.refresh(note)
    return note

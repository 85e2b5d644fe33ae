"""Recent notification deliveries, for dashboards that poll instead of subscribing."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from expenseflow.core.event_bus import get_notification_bus
from expenseflow.services.auth import verify_api_key

router = APIRouter(prefix="/notifications", tags=["notifications"], dependencies=[Depends(verify_api_key)])


@router.get("/recent")
def recent_notifications(
    audience: Optional[str] = Query(default=None),
    event_type: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
):
    deliveries = get_notification_bus().get_history(audience=audience, event_type=event_type, limit=limit)
    return {"success": True, "data": [d.to_dict() for d in deliveries], "count": len(deliveries)}

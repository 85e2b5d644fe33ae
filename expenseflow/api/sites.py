"""Site budget endpoints."""

from datetime import datetime, timezone
from typing import Optional
import re

from fastapi import APIRouter, Depends, Query

from expenseflow.core.budget import period_key_for
from expenseflow.core.engine import get_engine
from expenseflow.models.requests import CreateSiteRequest
from expenseflow.services.auth import verify_api_key
from expenseflow.services.errors import NotFoundError, ValidationError

router = APIRouter(prefix="/sites", tags=["sites"], dependencies=[Depends(verify_api_key)])

PERIOD_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@router.post("")
def create_site(request: CreateSiteRequest):
    site = get_engine().db.create_site({
        "name": request.name,
        "code": request.code,
        "monthly_limit": request.monthly_limit,
        "yearly_limit": request.yearly_limit,
        "category_limits": request.category_limits,
        "alert_threshold": request.alert_threshold,
    })
    return {"success": True, "data": site, "message": "Site created successfully"}


@router.get("")
def list_sites():
    sites = get_engine().db.list_sites()
    return {"success": True, "data": sites, "count": len(sites)}


@router.get("/{site_id}")
def get_site(site_id: str):
    site = get_engine().db.get_site(site_id)
    if not site:
        raise NotFoundError("site", site_id)
    return {"success": True, "data": site}


@router.get("/{site_id}/budget")
def site_budget(site_id: str, period: Optional[str] = Query(default=None)):
    """Utilization for ``period`` (YYYY-MM, defaults to the current month)."""
    if period is None:
        period = period_key_for(datetime.now(timezone.utc))
    elif not PERIOD_RE.match(period):
        raise ValidationError("Period must look like YYYY-MM", detail=f"Got {period!r}")
    return {"success": True, "data": get_engine().get_budget_status(site_id, period)}

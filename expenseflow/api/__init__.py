"""API routers."""
from expenseflow.api.expenses import router as expenses_router
from expenseflow.api.sites import router as sites_router
from expenseflow.api.notifications import router as notifications_router

__all__ = ["expenses_router", "sites_router", "notifications_router"]

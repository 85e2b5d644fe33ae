"""
Expenseflow - FastAPI Backend

Multi-level expense approval: submitted -> L1 -> L2 -> L3 -> Finance (paid),
or rejected at any stage, with per-site budget tracking and real-time
notification fan-out.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Approve an expense as an L1 approver:
   curl -X PUT http://localhost:8000/expenses/<id>/approve \
     -H "X-User-Id: u-1" -H "X-User-Role: l1_approver" \
     -H "Content-Type: application/json" -d '{"level": 1, "action": "approve"}'
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from datetime import datetime, timezone
import time

from expenseflow import __version__
from expenseflow.api import expenses_router, sites_router, notifications_router
from expenseflow.core.engine import get_engine
from expenseflow.services.errors import ExpenseflowError, status_code_for
from expenseflow.services.logging import log_request, log_error, logger

app = FastAPI(
    title="Expenseflow API",
    description="""
    Expenseflow API - Expense Approval Workflow

    ## Approval chain
    - L1 approver acts on `submitted`
    - L2 approver acts on `approved_l1`
    - L3 approver acts on `approved_l2`
    - Finance acts on `approved_l3` (payment)
    - Any stage may reject; `payment_processed` and `rejected` are final

    ## Authentication
    Identity comes from the upstream auth layer via `X-User-Id` and `X-User-Role`.
    Set `API_KEY` to additionally require an `X-API-Key` header.
    """,
    version=__version__,
)

app.include_router(expenses_router)
app.include_router(sites_router)
app.include_router(notifications_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.headers.get("X-User-Id", request.client.host if request.client else "unknown")

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id
            )
            return response
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ExpenseflowError)
async def expenseflow_exception_handler(request: Request, exc: ExpenseflowError):
    """Render workflow errors as ``{success: false, error, message, ...}``."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        log_error(exc.code.value, str(exc), exc.context)
    else:
        logger.warning(f"{request.method} {request.url.path} -> {exc.code.value}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": str(request.url.path), "method": request.method},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again or contact support.",
        }
    )


@app.on_event("startup")
async def startup_event():
    """Initialize the database and replay spend a crash left unrecorded."""
    replayed = get_engine().reconcile_spend()
    if replayed:
        logger.warning(f"Replayed budget spend for {len(replayed)} paid expense(s) on startup")
    logger.info("Expenseflow API started")


@app.get("/health")
def health():
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

"""
Authentication hooks for the Expenseflow API.

Login and sessions live in the surrounding application. By the time a
request reaches this service the auth layer has resolved the caller and
forwards ``X-User-Id`` / ``X-User-Role``; the approval core still re-checks
the role against the expense's stage.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Security, HTTPException, status
from fastapi.security import APIKeyHeader

from expenseflow.core.config import get_settings
from expenseflow.core.models import ApproverRole, normalize_role
from expenseflow.services.errors import ExpenseflowError

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


def verify_api_key(api_key: Optional[str] = Security(API_KEY_HEADER)) -> str:
    """
    Verify API key from request header.

    When ``API_KEY`` is unset every request is allowed (development mode).
    """
    expected = get_settings().api_key
    if expected is None:
        return api_key or "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


@dataclass
class Actor:
    user_id: str
    raw_role: str

    @property
    def role(self) -> ApproverRole:
        """Approver role; raises ValidationError for submitters and unknown roles."""
        return normalize_role(self.raw_role)

    @property
    def is_approver(self) -> bool:
        try:
            normalize_role(self.raw_role)
        except ExpenseflowError:
            return False
        return True


def get_current_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return Actor(user_id=x_user_id, raw_role=(x_user_role or "submitter").strip())

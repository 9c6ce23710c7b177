"""
Shared dependencies. Caller identity comes from the upstream auth layer.
"""

from fastapi import Header, HTTPException, Request

from .platform.request_context import set_user_id
from .services.credit_service import CreditEngine


def get_current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    set_user_id(user_id)
    return user_id


def get_credit_engine(request: Request) -> CreditEngine:
    engine = getattr(request.app.state, "credit_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Credit engine is not ready")
    return engine


__all__ = ["get_current_user_id", "get_credit_engine"]

from contextvars import ContextVar
from typing import Optional

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_user_id_ctx: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


def set_request_id(request_id: str):
    return _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def set_user_id(user_id: Optional[str]):
    """Bind the authenticated caller to the current request for log correlation."""
    return _user_id_ctx.set(user_id)


def get_user_id() -> Optional[str]:
    return _user_id_ctx.get()

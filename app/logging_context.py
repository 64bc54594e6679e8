from __future__ import annotations

from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_sync_state_ctx: ContextVar[str | None] = ContextVar("sync_state_id", default=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def set_request_id(value: str | None) -> None:
    _request_id_ctx.set(value)


def get_sync_state_id() -> str | None:
    return _sync_state_ctx.get()


def set_sync_state_id(value: str | None) -> None:
    _sync_state_ctx.set(value)

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

RequestContext = dict[str, str]

_request_context: ContextVar[RequestContext] = ContextVar("request_context", default={})


def set_request_context(context: RequestContext) -> Token:
    return _request_context.set(context)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_request_context() -> RequestContext:
    return _request_context.get()


def describe_request_context() -> str:
    context = get_request_context()
    return f"context={context}" if context else "context=none"


@contextmanager
def order_context(order_id: str, user_id: int | None = None) -> Iterator[RequestContext]:
    context = {**get_request_context(), "order_id": order_id}
    if user_id is not None:
        context["user_id"] = str(user_id)
    token = set_request_context(context)
    try:
        yield context
    finally:
        reset_request_context(token)

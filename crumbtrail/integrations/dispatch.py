"""
Controller dispatch breadcrumbs.

Frameworks without a controller abstraction of their own call their view
functions from a router; wrapping that call in :py:func:`record_dispatch`
(or decorating the view with :py:func:`dispatch_breadcrumbs`) names the
request ``Controller#action`` and records when dispatch started and how it
ended.
"""

import inspect
from contextlib import contextmanager
from functools import wraps
from time import perf_counter

from crumbtrail.consts import BreadcrumbCategory
from crumbtrail.integrations import Integration, get_enabled
from crumbtrail.utils import capture_internal_exceptions

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

    from crumbtrail.scope import Scope

    F = TypeVar("F", bound=Callable[..., Any])


class DispatchIntegration(Integration):
    identifier = "dispatch"

    @staticmethod
    def setup_once() -> None:
        pass


class Dispatch:
    """Handed out by :py:func:`record_dispatch`. Set ``status`` to report
    the response status in the completion breadcrumb."""

    __slots__ = ("controller", "action", "status")

    def __init__(self, controller: str, action: str) -> None:
        self.controller = controller
        self.action = action
        self.status: "Optional[int]" = None

    @property
    def name(self) -> str:
        return "%s#%s" % (self.controller, self.action)


def _elapsed_ms(start: float) -> float:
    return round((perf_counter() - start) * 1000, 2)


def _begin(
    scope: "Scope",
    dispatch: Dispatch,
    params: "Optional[Dict[str, Any]]",
    format: "Optional[str]",
    method: "Optional[str]",
) -> None:
    scope.set_route(dispatch.controller, dispatch.action)

    tags = {}
    if format:
        tags["format"] = format
    if method:
        tags["http_method"] = method
    scope.set_tags(tags)
    if params:
        scope.set_context("params", params)

    data: "Dict[str, Any]" = {
        "controller": dispatch.controller,
        "action": dispatch.action,
    }
    if params:
        data["params"] = params
    if format:
        data["format"] = format
    if method:
        data["method"] = method

    scope.add_breadcrumb(
        category=BreadcrumbCategory.CONTROLLER,
        message="Processing %s" % dispatch.name,
        data=data,
    )


@contextmanager
def record_dispatch(
    controller: str,
    action: str,
    params: "Optional[Dict[str, Any]]" = None,
    format: "Optional[str]" = None,
    method: "Optional[str]" = None,
) -> "Iterator[Dispatch]":
    """
    Records the dispatch of a request to ``controller``/``action``.

    .. code-block:: python

        with record_dispatch("PostsController", "show", params=params) as dispatch:
            response = show(request)
            dispatch.status = response.status_code

    An exception raised inside the block is recorded and re-raised.
    """
    dispatch = Dispatch(controller, action)
    integration, scope, _ = get_enabled(DispatchIntegration)
    if integration is None or scope is None:
        yield dispatch
        return

    with capture_internal_exceptions():
        _begin(scope, dispatch, params, format, method)

    start = perf_counter()
    try:
        yield dispatch
    except Exception as exc:
        with capture_internal_exceptions():
            scope.add_breadcrumb(
                category=BreadcrumbCategory.CONTROLLER,
                level="error",
                message="Failed %s: %s" % (dispatch.name, type(exc).__name__),
                data={"duration_ms": _elapsed_ms(start)},
            )
        raise
    else:
        with capture_internal_exceptions():
            scope.add_breadcrumb(
                category=BreadcrumbCategory.CONTROLLER,
                message="Completed %s (%s)"
                % (dispatch.name, dispatch.status if dispatch.status is not None else "-"),
                data={"duration_ms": _elapsed_ms(start), "status_code": dispatch.status},
            )


def dispatch_breadcrumbs(
    controller: str, action: "Optional[str]" = None
) -> "Callable[[F], F]":
    """
    Decorator form of :py:func:`record_dispatch`. The action defaults to
    the name of the decorated function and the status is taken from the
    returned response. Coroutine functions are supported.
    """
    from crumbtrail.middleware import get_response_status

    def decorator(f: "F") -> "F":
        action_name = action or f.__name__

        if inspect.iscoroutinefunction(f):

            @wraps(f)
            async def async_wrapper(*args: "Any", **kwargs: "Any") -> "Any":
                with record_dispatch(controller, action_name) as dispatch:
                    rv = await f(*args, **kwargs)
                    dispatch.status = get_response_status(rv)
                    return rv

            return async_wrapper  # type: ignore

        @wraps(f)
        def wrapper(*args: "Any", **kwargs: "Any") -> "Any":
            with record_dispatch(controller, action_name) as dispatch:
                rv = f(*args, **kwargs)
                dispatch.status = get_response_status(rv)
                return rv

        return wrapper  # type: ignore

    return decorator

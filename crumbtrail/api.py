import threading

from crumbtrail.client import Client
from crumbtrail.scope import ScopeManager, get_active_scope
from crumbtrail.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Callable, ContextManager, Dict, Optional, TypeVar, Union

    from crumbtrail._types import Breadcrumb, BreadcrumbHint, Event, ExcInfo, LogLevelStr
    from crumbtrail.scope import Scope

    T = TypeVar("T")


# When changing this, update __all__ in __init__.py too
__all__ = [
    "init",
    "shutdown",
    "add_breadcrumb",
    "capture_exception",
    "capture_message",
    "flush",
    "get_client",
    "is_initialized",
    "last_event_id",
    "new_scope",
    "set_context",
    "set_extra",
    "set_tag",
    "set_user",
    "with_scope",
]


_client_lock = threading.Lock()
_client: "Optional[Client]" = None


def init(*args: "Optional[str]", **kwargs: "Any") -> Client:
    """Initializes crumbtrail and returns the installed client.

    The options are the same as for :py:class:`crumbtrail.client.Client`.
    Calling ``init`` while a client is installed does nothing and returns
    that client.
    """
    global _client

    with _client_lock:
        if _client is not None:
            logger.debug("crumbtrail is already initialized, ignoring init()")
            return _client
        _client = Client(*args, **kwargs)
        return _client


def shutdown(timeout: "Optional[float]" = None) -> None:
    """Flushes and closes the installed client, then uninstalls it."""
    global _client

    with _client_lock:
        client = _client
        _client = None

    if client is not None:
        client.close(timeout=timeout)


def get_client() -> "Optional[Client]":
    """Returns the client of the active scope, or else the installed one."""
    scope = get_active_scope()
    if scope is not None and scope.client is not None:
        return scope.client
    return _client


def is_initialized() -> bool:
    """
    Returns whether crumbtrail has been initialized with an active client,
    i.e. one that can send events.
    """
    client = get_client()
    return client is not None and client.is_active()


def _scope_manager() -> ScopeManager:
    client = get_client()
    if client is not None:
        return client.scopes
    return ScopeManager()


def capture_exception(
    error: "Optional[Union[BaseException, ExcInfo]]" = None,
    extra: "Optional[Dict[str, Any]]" = None,
) -> "Optional[Event]":
    client = get_client()
    if client is None:
        return None
    return client.capture_exception(error, extra=extra)


def capture_message(
    message: str,
    level: "LogLevelStr" = "info",
    extra: "Optional[Dict[str, Any]]" = None,
) -> "Optional[Event]":
    client = get_client()
    if client is None:
        return None
    return client.capture_message(message, level=level, extra=extra)


def add_breadcrumb(
    crumb: "Optional[Breadcrumb]" = None,
    hint: "Optional[BreadcrumbHint]" = None,
    **kwargs: "Any",
) -> bool:
    """
    Adds a breadcrumb to the active scope. Outside of a request there is
    no scope and the breadcrumb is dropped.
    """
    scope = get_active_scope()
    if scope is None:
        logger.debug("Dropped breadcrumb because no scope is active")
        return False
    return scope.add_breadcrumb(crumb, hint, **kwargs)


def with_scope(fn: "Callable[[Scope], T]", merge: bool = False) -> "T":
    """
    Calls ``fn`` with a fork of the active scope. Whatever ``fn`` sets on
    the fork is discarded afterwards unless ``merge`` is true.

    .. code-block:: python

        def report(scope):
            scope.set_tag("job", "import")
            crumbtrail.capture_exception(error)

        crumbtrail.with_scope(report)
    """
    return _scope_manager().with_scope(fn, merge=merge)


def new_scope(merge: bool = False) -> "ContextManager[Scope]":
    """Context manager form of :py:func:`with_scope`."""
    return _scope_manager().new_scope(merge=merge)


def set_user(value: "Optional[Dict[str, Any]]") -> None:
    scope = get_active_scope()
    if scope is None:
        logger.debug("Ignoring set_user outside of a scope")
        return
    scope.set_user(value)


def set_tag(key: str, value: "Any") -> None:
    scope = get_active_scope()
    if scope is None:
        logger.debug("Ignoring set_tag outside of a scope")
        return
    scope.set_tag(key, value)


def set_context(key: str, value: "Dict[str, Any]") -> None:
    scope = get_active_scope()
    if scope is None:
        logger.debug("Ignoring set_context outside of a scope")
        return
    scope.set_context(key, value)


def set_extra(key: str, value: "Any") -> None:
    scope = get_active_scope()
    if scope is None:
        logger.debug("Ignoring set_extra outside of a scope")
        return
    scope.set_extra(key, value)


def last_event_id() -> "Optional[str]":
    """Returns the ID of the last event sent from the active scope or client."""
    scope = get_active_scope()
    if scope is not None and scope.last_event_id is not None:
        return scope.last_event_id
    client = get_client()
    return client.last_event_id if client is not None else None


def flush(
    timeout: "Optional[float]" = None,
    callback: "Optional[Callable[[int, float], None]]" = None,
) -> None:
    client = get_client()
    if client is not None:
        client.flush(timeout=timeout, callback=callback)

"""
Request middleware.

The middleware puts every request in its own scope, fills the scope from
the request, and reports an exception that escapes the wrapped handler.
The exception is always re-raised unchanged so the host framework's own
error handling still runs.
"""

from __future__ import annotations

from collections.abc import MutableMapping
from contextvars import ContextVar
from functools import partial

from crumbtrail.api import get_client
from crumbtrail.consts import (
    ENVIRON_EVENT_ID,
    EVENT_ID_ATTRIBUTE,
    OP,
    SPANSTATUS,
    BreadcrumbCategory,
    TransactionSource,
)
from crumbtrail.extractor import (
    HasEnviron,
    HasRequestLine,
    HasRoute,
    WsgiRequest,
    _guard,
    extract,
)
from crumbtrail.scope import use_scope
from crumbtrail.tracing import Transaction
from crumbtrail.utils import capture_internal_exceptions, logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional

    from crumbtrail._types import Event
    from crumbtrail.client import Client
    from crumbtrail.scope import Scope

    StartResponse = Callable[..., Any]
    UserAttributes = Callable[[Any], Optional[Mapping[str, Any]]]


_wsgi_middleware_applied: ContextVar[bool] = ContextVar("crumbtrail_wsgi_middleware_applied")


def _request_line(request: Any) -> tuple[Optional[str], Optional[str]]:
    if isinstance(request, HasRequestLine):
        return request.method, request.path
    if isinstance(request, HasEnviron):
        return request.environ.get("REQUEST_METHOD"), request.environ.get("PATH_INFO")
    return None, None


def get_response_status(response: Any) -> Optional[int]:
    """
    Finds the HTTP status of a response object: its ``status_code``, its
    ``status`` (``200`` or ``"200 OK"``), or the first element of a
    ``(status, body)`` tuple.
    """
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(response, "status", None)
    if status is None and isinstance(response, tuple) and response:
        status = response[0]
    if status is None:
        return None
    if isinstance(status, str):
        status = status.split(" ", 1)[0]
    try:
        return int(status)
    except (TypeError, ValueError):
        return None


class _RequestCycle:
    """Everything the middleware records about one request."""

    __slots__ = (
        "client",
        "request",
        "user_attributes",
        "scope",
        "transaction",
        "status",
        "failed",
        "_finished",
    )

    def __init__(
        self,
        client: Client,
        request: Any,
        user_attributes: Optional[UserAttributes] = None,
    ) -> None:
        self.client = client
        self.request = request
        self.user_attributes = user_attributes
        self.scope: Optional[Scope] = None
        self.transaction: Optional[Transaction] = None
        self.status: Optional[int] = None
        self.failed = False
        self._finished = False

    def begin(self) -> Scope:
        # Nested middleware shares the dedupe window of the outermost request.
        if self.client.scopes.active() is None:
            self.client.forget_seen_errors()
        self.scope = scope = self.client.scopes.begin_scope()

        with capture_internal_exceptions():
            scope.clear_breadcrumbs()
            method, path = _request_line(self.request)
            if path:
                scope.set_transaction_name(path, source=TransactionSource.URL)

            self._apply_context(scope)

            scope.add_breadcrumb(
                category=BreadcrumbCategory.REQUEST,
                message="Started %s %s" % (method or "-", path or "-"),
                type="http",
                data={"method": method, "path": path},
            )

            if self.client.should_sample_trace():
                self.transaction = Transaction(
                    name=scope.transaction or path or "",
                    op=OP.HTTP_SERVER,
                    source=scope.transaction_source or TransactionSource.URL,
                    sampled=True,
                )
                scope.span = self.transaction

        return scope

    def _apply_context(self, scope: Scope) -> None:
        user_attributes = None
        callback = self.user_attributes
        if callback is not None:
            result = _guard(lambda: callback(self.request))
            if result.ok:
                user_attributes = result.value

        context = extract(
            self.request,
            sensitive_keys=self.client.options["sensitive_keys"],
            user_attributes=user_attributes,
        )
        if context.get("user") is not None:
            scope.set_user(context["user"])
        for key in "request", "session", "params":
            if key in context:
                scope.set_context(key, context[key])
        if context.get("tags"):
            scope.set_tags(context["tags"])

        controller, action = self._route()
        if controller and action:
            scope.set_route(controller, action)

    def _route(self) -> tuple[Optional[str], Optional[str]]:
        if isinstance(self.request, HasRoute):
            return self.request.controller_name, self.request.action_name
        return None, None

    def _facts(self) -> Dict[str, Any]:
        facts: Dict[str, Any] = {}
        with capture_internal_exceptions():
            controller, action = self._route()
            if controller and action:
                facts["controller"] = controller
                facts["action"] = action
            _, path = _request_line(self.request)
            if path:
                facts["path"] = path
        return facts

    def completed(self, status: Optional[int]) -> None:
        self.status = status
        if self.scope is None:
            return
        with capture_internal_exceptions():
            self.scope.add_breadcrumb(
                category=BreadcrumbCategory.REQUEST,
                message="Completed %s" % (status if status is not None else "-"),
                type="http",
                data={"status_code": status},
            )

    def failure(self, exc: Exception) -> Optional[Event]:
        """Reports ``exc``. Returns the event that was sent, if any."""
        self.failed = True
        if self.scope is None:
            return None

        with capture_internal_exceptions():
            self.scope.add_breadcrumb(
                category=BreadcrumbCategory.REQUEST,
                level="error",
                type="http",
                message="Failed with %s" % type(exc).__name__,
            )

        return self.client.capture_exception(
            exc,
            scope=self.scope,
            extra=self._facts(),
            mechanism={"type": "crumbtrail.middleware", "handled": False},
        )

    def cancelled(self) -> None:
        self.failed = True
        if self.transaction is not None:
            self.transaction.set_status(SPANSTATUS.CANCELLED)

    def finish(self) -> None:
        """Finishes the transaction. Runs at most once."""
        if self._finished:
            return
        self._finished = True

        transaction = self.transaction
        if transaction is None:
            return
        with capture_internal_exceptions():
            if transaction.status is None:
                if self.failed:
                    transaction.set_http_status(500)
                elif self.status is not None:
                    transaction.set_http_status(self.status)
            transaction.finish(scope=self.scope, client=self.client)

    def end(self) -> None:
        """Deactivates the scope of the request."""
        if self.scope is not None:
            self.client.scopes.end_scope(self.scope)


class RequestMiddleware:
    """
    Wraps a request handler, ``handler(request) -> response``.

    :param client: The client to report to. Defaults to the client installed
        by :py:func:`crumbtrail.init`.
    :param facade: Turns the request into an object implementing the
        capability protocols of :py:mod:`crumbtrail.extractor`. By default
        the request itself is used.
    :param user_attributes: Called with the request. The returned mapping is
        merged into the reported user after redaction.

    When the handler fails, the id of the reported event is stored on the
    request: under ``crumbtrail.event_id`` when the request is or carries a
    WSGI environ, as its ``crumbtrail_event_id`` attribute otherwise.
    """

    def __init__(
        self,
        handler: Callable[[Any], Any],
        client: Optional[Client] = None,
        facade: Optional[Callable[[Any], Any]] = None,
        user_attributes: Optional[UserAttributes] = None,
    ) -> None:
        self.handler = handler
        self.client = client
        self.facade = facade
        self.user_attributes = user_attributes

    def _active_client(self) -> Optional[Client]:
        client = self.client if self.client is not None else get_client()
        if client is None or not client.is_active():
            return None
        return client

    def _cycle(self, client: Client, request: Any) -> _RequestCycle:
        facade = request
        if self.facade is not None:
            with capture_internal_exceptions():
                facade = self.facade(request)
        return _RequestCycle(client, facade, self.user_attributes)

    def __call__(self, request: Any) -> Any:
        return self.handle(request)

    def handle(self, request: Any) -> Any:
        client = self._active_client()
        if client is None:
            return self.handler(request)

        cycle = self._cycle(client, request)
        cycle.begin()
        try:
            response = self.handler(request)
        except Exception as exc:
            _attach_event_id(request, cycle.failure(exc))
            raise
        except BaseException:
            cycle.cancelled()
            raise
        else:
            cycle.completed(get_response_status(response))
            return response
        finally:
            cycle.finish()
            cycle.end()

    async def handle_async(self, request: Any) -> Any:
        """Same as :py:meth:`handle` for a handler that is a coroutine function."""
        client = self._active_client()
        handler: Callable[[Any], Awaitable[Any]] = self.handler
        if client is None:
            return await handler(request)

        cycle = self._cycle(client, request)
        cycle.begin()
        try:
            response = await handler(request)
        except Exception as exc:
            _attach_event_id(request, cycle.failure(exc))
            raise
        except BaseException:
            cycle.cancelled()
            raise
        else:
            cycle.completed(get_response_status(response))
            return response
        finally:
            cycle.finish()
            cycle.end()


class WsgiMiddleware:
    __slots__ = ("app", "client", "user_attributes")

    def __init__(
        self,
        app: Callable[[Dict[str, Any], StartResponse], Any],
        client: Optional[Client] = None,
        user_attributes: Optional[UserAttributes] = None,
    ) -> None:
        self.app = app
        self.client = client
        self.user_attributes = user_attributes

    def __call__(
        self, environ: Dict[str, Any], start_response: StartResponse
    ) -> Any:
        client = self.client if self.client is not None else get_client()
        if client is None or not client.is_active():
            return self.app(environ, start_response)

        if _wsgi_middleware_applied.get(False):
            return self.app(environ, start_response)

        _wsgi_middleware_applied.set(True)
        cycle = _RequestCycle(client, WsgiRequest(environ), self.user_attributes)
        try:
            cycle.begin()
            try:
                response = self.app(
                    environ, partial(_crumbtrail_start_response, start_response, cycle)
                )
            except Exception as exc:
                _record_event_id(environ, cycle.failure(exc))
                cycle.finish()
                raise
            except BaseException:
                cycle.cancelled()
                cycle.finish()
                raise
        finally:
            cycle.end()
            _wsgi_middleware_applied.set(False)

        return _ScopedResponse(cycle, environ, response)


def _record_event_id(environ: Dict[str, Any], event: Optional[Event]) -> None:
    if event is not None:
        environ[ENVIRON_EVENT_ID] = event["event_id"]


def _attach_event_id(request: Any, event: Optional[Event]) -> None:
    if event is None:
        return
    if isinstance(request, MutableMapping):
        _record_event_id(request, event)
    elif isinstance(request, HasEnviron) and isinstance(
        request.environ, MutableMapping
    ):
        _record_event_id(request.environ, event)
    else:
        try:
            setattr(request, EVENT_ID_ATTRIBUTE, event["event_id"])
        except AttributeError:
            logger.debug("Cannot store event id on %s", type(request).__name__)


def _crumbtrail_start_response(
    old_start_response: StartResponse,
    cycle: _RequestCycle,
    status: str,
    response_headers: Any,
    exc_info: Optional[Any] = None,
) -> Any:
    with capture_internal_exceptions():
        cycle.status = int(status.split(" ", 1)[0])

    if exc_info is None:
        # Some WSGI test clients cannot deal with the exc_info argument if
        # one is present.
        return old_start_response(status, response_headers)
    else:
        return old_start_response(status, response_headers, exc_info)


class _ScopedResponse:
    """
    Iterates the response body with the scope of its request active.

    Errors raised while the body is produced are reported like errors of
    the application itself. The request is finished when the body is
    exhausted or closed.
    """

    __slots__ = ("_cycle", "_environ", "_response")

    def __init__(
        self, cycle: _RequestCycle, environ: Dict[str, Any], response: Any
    ) -> None:
        self._cycle = cycle
        self._environ = environ
        self._response = response

    def __iter__(self) -> Iterator[bytes]:
        cycle = self._cycle
        assert cycle.scope is not None

        with use_scope(cycle.scope):
            iterator = iter(self._response)

        while True:
            with use_scope(cycle.scope):
                try:
                    chunk = next(iterator)
                except StopIteration:
                    break
                except Exception as exc:
                    _record_event_id(self._environ, cycle.failure(exc))
                    cycle.finish()
                    raise
                except BaseException:
                    cycle.cancelled()
                    cycle.finish()
                    raise

            yield chunk

        self._complete()

    def _complete(self) -> None:
        cycle = self._cycle
        if not cycle.failed and not cycle._finished:
            assert cycle.scope is not None
            with use_scope(cycle.scope):
                cycle.completed(cycle.status)
                cycle.finish()

    def close(self) -> None:
        cycle = self._cycle
        assert cycle.scope is not None

        with use_scope(cycle.scope):
            try:
                self._response.close()
            except AttributeError:
                pass
            except Exception as exc:
                _record_event_id(self._environ, cycle.failure(exc))
                cycle.finish()
                raise

        self._complete()
        logger.debug("Finished request %s", cycle.scope.transaction)

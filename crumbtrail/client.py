import os
import sys
import uuid
import random
import socket
import weakref
from contextvars import ContextVar
from datetime import datetime, timezone

from crumbtrail._types import FailureKind, Result
from crumbtrail.consts import (
    DEFAULT_OPTIONS,
    SDK_INFO,
    TransactionSource,
)
from crumbtrail.integrations import setup_integrations
from crumbtrail.redactor import redact
from crumbtrail.scope import Scope, ScopeManager, get_active_scope
from crumbtrail.transport import make_transport
from crumbtrail.utils import (
    capture_internal_exception,
    exc_info_from_error,
    exception_from_error,
    get_default_release,
    get_type_name,
    logger,
)

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar, Union

    from crumbtrail._types import Event, ExcInfo, Hint, LogLevelStr
    from crumbtrail.integrations import Integration
    from crumbtrail.tracing import Transaction

    I = TypeVar("I", bound=Integration)


_client_init_debug: "ContextVar[bool]" = ContextVar("client_init_debug")

# Keys of ``extra`` that are merged into the event instead of being
# reported as extra data.
_EVENT_SECTIONS = ("tags", "contexts", "user")


def _check_rate(options: "Dict[str, Any]", key: str) -> None:
    value = options[key]
    if value is None and key == "traces_sample_rate":
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("%s must be a number between 0 and 1, got %r" % (key, value))
    if not 0 <= value <= 1:
        raise ValueError("%s must be between 0 and 1, got %r" % (key, value))


def _get_options(*args: "Optional[str]", **kwargs: "Any") -> "Dict[str, Any]":
    if args and (isinstance(args[0], (bytes, str)) or args[0] is None):
        dsn: "Optional[str]" = args[0]
        args = args[1:]
    else:
        dsn = None

    if len(args) > 1:
        raise TypeError("Only single positional argument is expected")

    rv = dict(DEFAULT_OPTIONS)
    options = dict(*args, **kwargs)
    if dsn is not None and options.get("dsn") is None:
        options["dsn"] = dsn

    for key, value in options.items():
        if key not in rv:
            raise TypeError("Unknown option %r" % (key,))
        rv[key] = value

    if rv["dsn"] is None:
        rv["dsn"] = os.environ.get("CRUMBTRAIL_DSN")

    if rv["environment"] is None:
        rv["environment"] = os.environ.get("CRUMBTRAIL_ENVIRONMENT") or "production"

    if rv["project_root"] is None:
        rv["project_root"] = os.getcwd()

    if rv["release"] is None:
        rv["release"] = get_default_release(rv["project_root"])

    if rv["server_name"] is None and hasattr(socket, "gethostname"):
        rv["server_name"] = socket.gethostname()

    _check_rate(rv, "sample_rate")
    _check_rate(rv, "traces_sample_rate")

    if not isinstance(rv["max_breadcrumbs"], int) or rv["max_breadcrumbs"] < 0:
        raise ValueError(
            "max_breadcrumbs must be a non-negative integer, got %r"
            % (rv["max_breadcrumbs"],)
        )

    if isinstance(rv["enabled_environments"], str):
        rv["enabled_environments"] = (rv["enabled_environments"],)
    rv["enabled_environments"] = frozenset(
        str(env) for env in rv["enabled_environments"] or ()
    )
    rv["sensitive_keys"] = frozenset(str(key).lower() for key in rv["sensitive_keys"])

    return rv


def _run(fn: "Callable[[], Any]", kind: FailureKind) -> Result:
    try:
        return Result(fn())
    except Exception:
        capture_internal_exception(sys.exc_info())
        return Result(failure=kind)


class Client:
    """The client is internally responsible for capturing the events and
    forwarding them through the configured transport. It takes the client
    options as keyword arguments and optionally the DSN as first argument.

    A client without a transport (no DSN and no ``transport`` option) is
    inactive and captures nothing.
    """

    def __init__(self, *args: "Any", **kwargs: "Any") -> None:
        old_debug = _client_init_debug.get(False)
        try:
            self.options = options = _get_options(*args, **kwargs)
            self.last_event_id: "Optional[str]" = None
            self._last_seen: "ContextVar[Any]" = ContextVar("crumbtrail_last_seen")
            _client_init_debug.set(options["debug"])
            self.transport = make_transport(options)
            self.scopes = ScopeManager(self)
            self.integrations = setup_integrations(
                options["integrations"], with_defaults=options["default_integrations"]
            )
        finally:
            _client_init_debug.set(old_debug)

    def __repr__(self) -> str:
        return "<%s dsn=%r environment=%r>" % (
            self.__class__.__name__,
            self.dsn,
            self.options["environment"],
        )

    @property
    def dsn(self) -> "Optional[str]":
        """Returns the configured DSN as string."""
        return self.options["dsn"]

    def is_active(self) -> bool:
        """
        Returns whether the client can send anything, i.e. whether it has
        a transport.
        """
        return self.transport is not None

    def is_enabled_environment(self) -> bool:
        enabled = self.options["enabled_environments"]
        return not enabled or self.options["environment"] in enabled

    def get_integration(
        self, name_or_class: "Union[str, Type[I]]"
    ) -> "Optional[I]":
        """Returns the integration for this client by name or class.
        If the client does not have that integration then `None` is returned.
        """
        if isinstance(name_or_class, str):
            integration_name = name_or_class
        elif name_or_class.identifier is not None:
            integration_name = name_or_class.identifier
        else:
            raise ValueError("Integration has no name")

        return self.integrations.get(integration_name)  # type: ignore

    def should_sample_trace(self) -> bool:
        rate = self.options["traces_sample_rate"]
        if rate is None or not self.is_active():
            return False
        return random.random() < rate

    def _is_ignored_error(self, exc_info: "ExcInfo") -> bool:
        exc_type = exc_info[0]
        if exc_type is None:
            return False

        type_name = get_type_name(exc_type)
        full_name = "%s.%s" % (exc_type.__module__, type_name)

        for errcls in self.options["ignore_errors"]:
            # String types are matched against the type name in the
            # exception only
            if isinstance(errcls, str):
                if errcls == full_name or errcls == type_name:
                    return True
            else:
                if issubclass(exc_type, errcls):
                    return True

        return False

    def _should_capture(self, exc_info: "Optional[ExcInfo]" = None) -> bool:
        if not self.is_active():
            return False

        if not self.is_enabled_environment():
            logger.debug(
                "Not capturing, environment %r is not enabled",
                self.options["environment"],
            )
            return False

        if exc_info is not None and self._is_ignored_error(exc_info):
            return False

        if (
            self.options["sample_rate"] < 1.0
            and random.random() >= self.options["sample_rate"]
        ):
            logger.debug("Discarding event because of sample rate")
            return False

        return True

    def _resolve_transaction(
        self, snapshot: "Dict[str, Any]", extra: "Dict[str, Any]"
    ) -> "Tuple[Optional[str], Optional[str]]":
        controller = extra.get("controller")
        action = extra.get("action")
        if controller and action:
            return "%s#%s" % (controller, action), TransactionSource.VIEW

        if snapshot["route"]:
            return "%s#%s" % snapshot["route"], TransactionSource.VIEW

        if extra.get("path"):
            return str(extra["path"]), TransactionSource.URL

        if snapshot["transaction"]:
            source = snapshot["transaction_info"].get("source")
            return snapshot["transaction"], source or TransactionSource.CUSTOM

        return None, None

    def _build_event(
        self,
        event: "Event",
        scope: "Scope",
        extra: "Optional[Dict[str, Any]]",
    ) -> "Event":
        sensitive_keys = self.options["sensitive_keys"]
        extra = dict(extra or ())
        snapshot = scope.snapshot()

        event["event_id"] = uuid.uuid4().hex
        event["timestamp"] = datetime.now(timezone.utc)
        event["platform"] = "python"
        event["tags"] = snapshot["tags"]
        event["contexts"] = snapshot["contexts"]
        event["extra"] = snapshot["extra"]
        if snapshot["user"] is not None:
            event["user"] = snapshot["user"]
        event["breadcrumbs"] = {"values": snapshot["breadcrumbs"]}

        name, source = self._resolve_transaction(snapshot, extra)
        if name is not None:
            event["transaction"] = name
            event["transaction_info"] = {"source": source}

        if extra.get("tags"):
            event["tags"].update(
                redact({k: str(v) for k, v in extra["tags"].items()}, sensitive_keys)
            )
        if extra.get("contexts"):
            event["contexts"].update(redact(extra["contexts"], sensitive_keys))
        if extra.get("user"):
            user = event.setdefault("user", {})
            user.update(redact(extra["user"], sensitive_keys))

        event["extra"].update(
            redact(
                {k: v for k, v in extra.items() if k not in _EVENT_SECTIONS},
                sensitive_keys,
            )
        )

        return self._prepare_event(event)

    def _prepare_event(self, event: "Event") -> "Event":
        for key in "release", "environment", "server_name":
            if event.get(key) is None and self.options[key] is not None:
                event[key] = str(self.options[key]).strip()  # type: ignore
        if event.get("sdk") is None:
            sdk_info = dict(SDK_INFO)
            sdk_info["integrations"] = sorted(self.integrations.keys())
            event["sdk"] = sdk_info
        return event

    def _apply_before_send(self, event: "Event", hint: "Hint") -> "Optional[Event]":
        before_send = self.options["before_send"]
        if before_send is None:
            return event

        result = _run(lambda: before_send(event, hint), FailureKind.HOOK)
        if not result.ok:
            logger.info("before send raised, dropping event (%s)", event["event_id"])
            return None
        if result.value is None:
            logger.info("before send dropped event (%s)", event["event_id"])
        return result.value

    def _send(self, event: "Event", scope: "Scope") -> "Event":
        assert self.transport is not None
        self.transport.send(event)
        scope._last_event_id = self.last_event_id = event["event_id"]
        return event

    def _resolve_scope(self, scope: "Optional[Scope]") -> "Scope":
        if scope is not None:
            return scope
        active = get_active_scope()
        if active is not None:
            return active
        return Scope(client=self)

    def capture_event(
        self,
        event: "Event",
        hint: "Optional[Hint]" = None,
        scope: "Optional[Scope]" = None,
        extra: "Optional[Dict[str, Any]]" = None,
    ) -> "Optional[Event]":
        """Captures an event.

        This takes a partial event (for instance only the ``exception`` or
        ``message`` section), completes it from ``scope`` and hands it to
        the transport. The hint is passed on to ``before_send``.

        Never raises. Returns the event that was handed to the transport,
        or ``None`` if nothing was sent.
        """
        hint = dict(hint or ())
        exc_info = hint.get("exc_info")
        if not self._should_capture(exc_info):
            return None

        def capture() -> "Optional[Event]":
            resolved = self._resolve_scope(scope)
            built = self._build_event(dict(event), resolved, extra)  # type: ignore
            final = self._apply_before_send(built, hint)
            if final is None:
                return None
            return self._send(final, resolved)

        return _run(capture, FailureKind.CAPTURE).value

    def capture_exception(
        self,
        error: "Optional[Union[BaseException, ExcInfo]]" = None,
        scope: "Optional[Scope]" = None,
        extra: "Optional[Dict[str, Any]]" = None,
        mechanism: "Optional[Dict[str, Any]]" = None,
    ) -> "Optional[Event]":
        """Captures an exception.

        :param error: An exception to capture. If `None`, `sys.exc_info()` will be used.

        :param scope: The scope to take context from. Defaults to the active scope.

        :param extra: Additional facts. ``controller``/``action`` and
            ``path`` name the transaction, ``tags``, ``contexts`` and
            ``user`` are merged into the event, everything else is reported
            as extra data.

        :returns: The event that was sent, or ``None``.
        """
        result = _run(
            lambda: exc_info_from_error(error if error is not None else sys.exc_info()),
            FailureKind.CAPTURE,
        )
        if not result.ok or result.value[1] is None:
            return None
        exc_info = result.value

        if self._is_duplicate(exc_info[1]):
            logger.info("Dropped duplicated error event %s", exc_info[1])
            return None

        if mechanism is None:
            mechanism = {"type": "generic", "handled": True}

        event_result = _run(
            lambda: {
                "level": "error",
                "exception": exception_from_error(
                    exc_info,
                    project_root=self.options["project_root"],
                    mechanism=mechanism,
                ),
            },
            FailureKind.CAPTURE,
        )
        if not event_result.ok:
            return None

        event = self.capture_event(
            event_result.value, hint={"exc_info": exc_info}, scope=scope, extra=extra
        )
        if event is not None:
            self._remember(exc_info[1])
        return event

    def _is_duplicate(self, exc: "BaseException") -> bool:
        last_seen = self._last_seen.get(None)
        if isinstance(last_seen, weakref.ref):
            last_seen = last_seen()
        return last_seen is exc

    def forget_seen_errors(self) -> None:
        """Starts a new dedupe window. Called when a request begins."""
        self._last_seen.set(None)

    def _remember(self, exc: "BaseException") -> None:
        # we can only weakref non builtin types
        try:
            self._last_seen.set(weakref.ref(exc))
        except TypeError:
            self._last_seen.set(exc)

    def capture_message(
        self,
        message: str,
        level: "LogLevelStr" = "info",
        scope: "Optional[Scope]" = None,
        extra: "Optional[Dict[str, Any]]" = None,
    ) -> "Optional[Event]":
        """Captures a message."""
        return self.capture_event(
            {"message": message, "level": level}, scope=scope, extra=extra
        )

    def capture_transaction(
        self, transaction: "Transaction", scope: "Optional[Scope]" = None
    ) -> "Optional[Event]":
        """Sends a finished transaction. Sampling has already been decided."""
        if not self.is_active() or not self.is_enabled_environment():
            return None

        def capture() -> "Event":
            resolved = self._resolve_scope(scope)
            snapshot = resolved.snapshot()
            event = transaction.to_json()
            event["event_id"] = uuid.uuid4().hex
            event["platform"] = "python"
            event["tags"] = dict(snapshot["tags"], **event.get("tags", {}))
            event["contexts"] = dict(snapshot["contexts"], **event["contexts"])
            if snapshot["user"] is not None:
                event["user"] = snapshot["user"]
            event = self._prepare_event(event)
            assert self.transport is not None
            self.transport.send(event)
            return event

        return _run(capture, FailureKind.CAPTURE).value

    def close(
        self,
        timeout: "Optional[float]" = None,
        callback: "Optional[Callable[[int, float], None]]" = None,
    ) -> None:
        """
        Close the client and shut down the transport. Arguments have the same
        semantics as `self.flush()`.
        """
        if self.transport is not None:
            self.flush(timeout=timeout, callback=callback)
            self.transport.kill()
            self.transport = None

    def flush(
        self,
        timeout: "Optional[float]" = None,
        callback: "Optional[Callable[[int, float], None]]" = None,
    ) -> None:
        """
        Wait `timeout` seconds for the current events to be sent. If no
        `timeout` is provided, the `shutdown_timeout` option value is used.

        The `callback` is invoked with two arguments: the number of pending
        events and the configured timeout.
        """
        if self.transport is not None:
            if timeout is None:
                timeout = self.options["shutdown_timeout"]
            self.transport.flush(timeout=timeout, callback=callback)

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, exc_type: "Any", exc_value: "Any", tb: "Any") -> None:
        self.close()

import uuid
from datetime import datetime, timedelta, timezone
from time import perf_counter_ns

from crumbtrail.consts import OP, SPANSTATUS, TransactionSource
from crumbtrail.utils import capture_internal_exceptions, logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, Optional, Union

    from crumbtrail._types import Event
    from crumbtrail.client import Client
    from crumbtrail.scope import Scope


def get_span_status_from_http_code(http_status_code: int) -> str:
    """
    Returns the span status corresponding to the given HTTP status code.
    """
    if http_status_code < 400:
        return SPANSTATUS.OK

    elif 400 <= http_status_code < 500:
        if http_status_code == 403:
            return SPANSTATUS.PERMISSION_DENIED
        elif http_status_code == 404:
            return SPANSTATUS.NOT_FOUND
        elif http_status_code == 429:
            return SPANSTATUS.RESOURCE_EXHAUSTED
        elif http_status_code == 413:
            return SPANSTATUS.FAILED_PRECONDITION
        elif http_status_code == 401:
            return SPANSTATUS.UNAUTHENTICATED
        elif http_status_code == 409:
            return SPANSTATUS.ALREADY_EXISTS
        else:
            return SPANSTATUS.INVALID_ARGUMENT

    elif 500 <= http_status_code < 600:
        if http_status_code == 504:
            return SPANSTATUS.DEADLINE_EXCEEDED
        elif http_status_code == 501:
            return SPANSTATUS.UNIMPLEMENTED
        elif http_status_code == 503:
            return SPANSTATUS.UNAVAILABLE
        else:
            return SPANSTATUS.INTERNAL_ERROR

    return SPANSTATUS.UNKNOWN_ERROR


class Transaction:
    """
    Timing information of one handled request.

    A transaction is held by the scope of the request while it runs. When
    it is finished and was sampled it is sent through the transport as an
    event of type ``transaction``.
    """

    __slots__ = (
        "name",
        "op",
        "source",
        "status",
        "sampled",
        "start_timestamp",
        "timestamp",
        "tags",
        "data",
        "_trace_id",
        "_span_id",
        "_start_timestamp_monotonic_ns",
        "_context_manager_state",
    )

    def __init__(
        self,
        name: str = "",
        op: "Optional[str]" = OP.HTTP_SERVER,
        source: str = TransactionSource.CUSTOM,
        sampled: "Optional[bool]" = None,
        status: "Optional[str]" = None,
        trace_id: "Optional[str]" = None,
        span_id: "Optional[str]" = None,
    ) -> None:
        self.name = name
        self.op = op
        self.source = source
        self.sampled = sampled
        self.status = status
        self._trace_id = trace_id
        self._span_id = span_id
        self.tags: "Dict[str, str]" = {}
        self.data: "Dict[str, Any]" = {}

        self.start_timestamp = datetime.now(timezone.utc)
        self.timestamp: "Optional[datetime]" = None
        self._start_timestamp_monotonic_ns = perf_counter_ns()

    def __repr__(self) -> str:
        return "<%s(name=%r, op=%r, trace_id=%r, span_id=%r, sampled=%r, status=%r)>" % (
            self.__class__.__name__,
            self.name,
            self.op,
            self.trace_id,
            self.span_id,
            self.sampled,
            self.status,
        )

    def __enter__(self) -> "Transaction":
        from crumbtrail.scope import get_active_scope

        scope = get_active_scope()
        old_span = scope.span if scope is not None else None
        if scope is not None:
            scope.span = self
        self._context_manager_state = (scope, old_span)
        return self

    def __exit__(
        self, ty: "Optional[Any]", value: "Optional[Any]", tb: "Optional[Any]"
    ) -> None:
        if value is not None:
            if isinstance(value, Exception):
                self.set_status(SPANSTATUS.INTERNAL_ERROR)
            else:
                self.set_status(SPANSTATUS.CANCELLED)

        with capture_internal_exceptions():
            scope, old_span = self._context_manager_state
            del self._context_manager_state
            self.finish(scope=scope)
            if scope is not None:
                scope.span = old_span

    @property
    def trace_id(self) -> str:
        if not self._trace_id:
            self._trace_id = uuid.uuid4().hex

        return self._trace_id

    @property
    def span_id(self) -> str:
        if not self._span_id:
            self._span_id = uuid.uuid4().hex[16:]

        return self._span_id

    def set_tag(self, key: str, value: "Any") -> None:
        self.tags[key] = str(value)

    def set_data(self, key: str, value: "Any") -> None:
        self.data[key] = value

    def set_status(self, value: str) -> None:
        self.status = value

    def set_http_status(self, http_status: int) -> None:
        self.set_tag("http.status_code", http_status)
        self.set_data("http.response.status_code", http_status)
        self.set_status(get_span_status_from_http_code(http_status))

    def is_success(self) -> bool:
        return self.status == SPANSTATUS.OK

    def finish(
        self,
        scope: "Optional[Scope]" = None,
        end_timestamp: "Optional[Union[float, datetime]]" = None,
        client: "Optional[Client]" = None,
    ) -> "Optional[str]":
        """
        Sets the end timestamp of the transaction and sends it if it was
        sampled.

        :param scope: The scope whose state goes into the transaction event.
        :param end_timestamp: Optional timestamp that should
            be used as timestamp instead of the current time.
        :param client: The client to send through. Defaults to the client of
            ``scope``.

        :return: The event ID if the transaction was sent.
        """
        if self.timestamp is not None:
            # This transaction is already finished, ignore.
            return None

        if end_timestamp:
            if isinstance(end_timestamp, float):
                end_timestamp = datetime.fromtimestamp(end_timestamp, timezone.utc)
            self.timestamp = end_timestamp
        else:
            elapsed = perf_counter_ns() - self._start_timestamp_monotonic_ns
            self.timestamp = self.start_timestamp + timedelta(
                microseconds=elapsed / 1000
            )

        if self.status is None:
            self.status = SPANSTATUS.OK

        if not self.sampled:
            logger.debug("Discarding transaction because sampled = %r", self.sampled)
            return None

        if client is None and scope is not None:
            client = scope.client
        if client is None:
            logger.debug("Discarding transaction because no client is bound")
            return None

        event = client.capture_transaction(self, scope=scope)
        return event["event_id"] if event is not None else None

    def get_trace_context(self) -> "Dict[str, Any]":
        rv: "Dict[str, Any]" = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "op": self.op,
            "status": self.status,
        }
        if self.data:
            rv["data"] = dict(self.data)
        return rv

    def to_json(self) -> "Event":
        rv: "Event" = {
            "type": "transaction",
            "transaction": self.name,
            "transaction_info": {"source": self.source},
            "start_timestamp": self.start_timestamp,
            "contexts": {"trace": self.get_trace_context()},
        }
        if self.timestamp is not None:
            rv["timestamp"] = self.timestamp
        if self.tags:
            rv["tags"] = dict(self.tags)
        return rv

from time import perf_counter

from crumbtrail.consts import MAX_BREADCRUMB_MESSAGE_LENGTH, BreadcrumbCategory
from crumbtrail.integrations import DidNotEnable, Integration, get_enabled
from crumbtrail.utils import capture_internal_exceptions, safe_repr, truncate

try:
    from sqlalchemy import inspect
    from sqlalchemy.engine import Engine
    from sqlalchemy.event import listen
    from sqlalchemy.orm import Mapper
except ImportError:
    raise DidNotEnable("SQLAlchemy not installed.")

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, Optional

    from crumbtrail.scope import Scope


DEFAULT_SLOW_QUERY_THRESHOLD_MS = 100

_START_KEY = "crumbtrail_query_start"


class SqlalchemyIntegration(Integration):
    """
    Records slow and failing statements and ORM writes as breadcrumbs.

    Statements are recorded when they take at least
    ``slow_query_threshold_ms`` milliseconds.
    """

    identifier = "sqlalchemy"

    def __init__(
        self, slow_query_threshold_ms: float = DEFAULT_SLOW_QUERY_THRESHOLD_MS
    ) -> None:
        self.slow_query_threshold_ms = slow_query_threshold_ms

    @staticmethod
    def setup_once() -> None:
        listen(Engine, "before_cursor_execute", _before_cursor_execute)
        listen(Engine, "after_cursor_execute", _after_cursor_execute)
        listen(Engine, "handle_error", _handle_error)
        listen(Mapper, "after_insert", _after_insert)
        listen(Mapper, "after_update", _after_update)
        listen(Mapper, "after_delete", _after_delete)


def _before_cursor_execute(
    conn: "Any",
    cursor: "Any",
    statement: "Any",
    parameters: "Any",
    context: "Any",
    executemany: bool,
    *args: "Any",
) -> None:
    with capture_internal_exceptions():
        conn.info.setdefault(_START_KEY, []).append(perf_counter())


def _after_cursor_execute(
    conn: "Any", cursor: "Any", statement: "Any", parameters: "Any", *args: "Any"
) -> None:
    with capture_internal_exceptions():
        starts = conn.info.get(_START_KEY)
        if not starts:
            return
        duration_ms = round((perf_counter() - starts.pop()) * 1000, 2)

        integration, scope, _ = get_enabled(SqlalchemyIntegration)
        if integration is None or scope is None:
            return
        if duration_ms < integration.slow_query_threshold_ms:
            return

        sql = truncate(statement, MAX_BREADCRUMB_MESSAGE_LENGTH)
        data: "Dict[str, Any]" = {"statement": sql, "duration_ms": duration_ms}
        if isinstance(parameters, dict):
            data["parameters"] = parameters

        scope.add_breadcrumb(
            category=BreadcrumbCategory.DB,
            level="warning",
            type="query",
            message=truncate(
                "Slow query (%sms): %s" % (duration_ms, sql),
                MAX_BREADCRUMB_MESSAGE_LENGTH,
            ),
            data=data,
        )


def _handle_error(exception_context: "Any") -> None:
    with capture_internal_exceptions():
        conn = exception_context.connection
        if conn is not None:
            starts = conn.info.get(_START_KEY)
            if starts:
                starts.pop()

        integration, scope, _ = get_enabled(SqlalchemyIntegration)
        if integration is None or scope is None:
            return

        error = exception_context.original_exception
        scope.add_breadcrumb(
            category=BreadcrumbCategory.DB,
            level="error",
            type="query",
            message=truncate(
                "Query failed: %s: %s" % (type(error).__name__, error),
                MAX_BREADCRUMB_MESSAGE_LENGTH,
            ),
            data={
                "statement": truncate(
                    exception_context.statement, MAX_BREADCRUMB_MESSAGE_LENGTH
                ),
                "error": type(error).__name__,
            },
        )


def _identity(mapper: "Any", target: "Any") -> "Optional[str]":
    key = mapper.primary_key_from_instance(target)
    if not key or all(part is None for part in key):
        return None
    if len(key) == 1:
        return safe_repr(key[0])
    return ", ".join(safe_repr(part) for part in key)


def _record_write(
    scope: "Scope",
    verb: str,
    mapper: "Any",
    target: "Any",
    changes: "Optional[Dict[str, Any]]" = None,
) -> None:
    model = mapper.class_.__name__
    identity = _identity(mapper, target)
    data: "Dict[str, Any]" = {"model": model, "id": identity}
    if changes:
        data["changes"] = changes

    scope.add_breadcrumb(
        category=BreadcrumbCategory.DB,
        type="query",
        message="%s %s (ID: %s)" % (verb, model, identity),
        data=data,
    )


def _after_insert(mapper: "Any", connection: "Any", target: "Any") -> None:
    with capture_internal_exceptions():
        integration, scope, _ = get_enabled(SqlalchemyIntegration)
        if integration is None or scope is None:
            return
        _record_write(scope, "Created", mapper, target)


def _after_update(mapper: "Any", connection: "Any", target: "Any") -> None:
    with capture_internal_exceptions():
        integration, scope, _ = get_enabled(SqlalchemyIntegration)
        if integration is None or scope is None:
            return

        changes = {}
        for attr in inspect(target).attrs:
            history = attr.history
            if history.has_changes() and history.added:
                value = history.added[0]
                changes[attr.key] = value if _is_plain(value) else safe_repr(value)
        _record_write(scope, "Updated", mapper, target, changes)


def _after_delete(mapper: "Any", connection: "Any", target: "Any") -> None:
    with capture_internal_exceptions():
        integration, scope, _ = get_enabled(SqlalchemyIntegration)
        if integration is None or scope is None:
            return
        _record_write(scope, "Destroyed", mapper, target)


def _is_plain(value: "Any") -> bool:
    return value is None or isinstance(value, (str, int, float, bool))

import logging
from datetime import datetime, timezone

from crumbtrail.consts import MAX_BREADCRUMB_MESSAGE_LENGTH, BreadcrumbCategory
from crumbtrail.integrations import Integration, get_enabled
from crumbtrail.utils import capture_internal_exceptions, truncate

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from logging import LogRecord
    from typing import Any, Dict

    from crumbtrail._types import Breadcrumb


DEFAULT_LEVEL = logging.WARNING

# Lines web frameworks log for every request. The request lifecycle is
# already recorded by the middleware and the dispatch hook.
NOISE_PREFIXES = ("Processing", "Parameters:", "Completed", "Rendering", "Redirected")

_IGNORED_LOGGERS = set(["crumbtrail.errors"])


def ignore_logger(name: str) -> None:
    """This disables the breadcrumb integration for a logger of a specific
    name. This primary use is for some integrations to disable breadcrumbs
    of this integration.
    """
    _IGNORED_LOGGERS.add(name)


class LoggingIntegration(Integration):
    """
    Records log lines at or above ``level`` as breadcrumbs.

    A single :py:class:`BreadcrumbHandler` is attached to the root logger,
    so records of loggers that do not propagate are not seen.
    """

    identifier = "logging"

    def __init__(self, level: int = DEFAULT_LEVEL) -> None:
        self.level = level

    @staticmethod
    def setup_once() -> None:
        root = logging.getLogger()
        if not any(isinstance(h, BreadcrumbHandler) for h in root.handlers):
            root.addHandler(BreadcrumbHandler())


def _can_record(record: "LogRecord") -> bool:
    return not any(
        record.name == name or record.name.startswith(name + ".")
        for name in _IGNORED_LOGGERS
    )


def _is_noise(message: str) -> bool:
    return message.lstrip().startswith(NOISE_PREFIXES)


def _logging_to_event_level(levelname: str) -> str:
    return {"critical": "fatal"}.get(levelname.lower(), levelname.lower())


COMMON_RECORD_ATTRS = frozenset(
    (
        "args",
        "asctime",
        "created",
        "data",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "linenno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack",
        "stack_info",
        "tags",
        "taskName",
        "thread",
        "threadName",
    )
)


def _extra_from_record(record: "LogRecord") -> "Dict[str, Any]":
    return {
        k: v
        for k, v in vars(record).items()
        if k not in COMMON_RECORD_ATTRS and not k.startswith("_")
    }


def _breadcrumb_from_record(record: "LogRecord", message: str) -> "Breadcrumb":
    data = _extra_from_record(record)
    data["logger"] = record.name
    return {
        "type": "log",
        "level": _logging_to_event_level(record.levelname),  # type: ignore
        "category": BreadcrumbCategory.LOG,
        "message": truncate(message, MAX_BREADCRUMB_MESSAGE_LENGTH),
        "timestamp": datetime.fromtimestamp(record.created, timezone.utc),
        "data": data,
    }


class BreadcrumbHandler(logging.Handler):
    def emit(self, record: "LogRecord") -> None:
        with capture_internal_exceptions():
            self._emit(record)

    def _emit(self, record: "LogRecord") -> None:
        if not _can_record(record):
            return

        integration, scope, _ = get_enabled(LoggingIntegration)
        if integration is None or scope is None:
            return

        if record.levelno < integration.level:
            return

        message = record.getMessage()
        if _is_noise(message):
            return

        scope.add_breadcrumb(
            _breadcrumb_from_record(record, message), hint={"log_record": record}
        )

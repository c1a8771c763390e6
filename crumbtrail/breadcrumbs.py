import sys
import copy
from collections import deque
from datetime import datetime, timezone

from crumbtrail.consts import DEFAULT_MAX_BREADCRUMBS, DEFAULT_SENSITIVE_KEYS
from crumbtrail.redactor import redact
from crumbtrail.utils import capture_internal_exception, logger, safe_repr

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, Iterable, Iterator, List, Optional

    from crumbtrail._types import (
        Breadcrumb,
        BreadcrumbHint,
        BreadcrumbProcessor,
        LogLevelStr,
    )


LEVELS = ("debug", "info", "warning", "error", "fatal")


def _copy_crumb(crumb: "Dict[str, Any]") -> "Dict[str, Any]":
    try:
        return copy.deepcopy(crumb)
    except Exception:
        rv = dict(crumb)
        if isinstance(rv.get("data"), dict):
            rv["data"] = {k: safe_repr(v) for k, v in rv["data"].items()}
        return rv


def make_breadcrumb(
    message: "Optional[str]" = None,
    category: "Optional[str]" = None,
    level: "LogLevelStr" = "info",
    data: "Optional[Dict[str, Any]]" = None,
    type: str = "default",
) -> "Breadcrumb":
    crumb: "Breadcrumb" = {
        "type": type,
        "level": level,
        "timestamp": datetime.now(timezone.utc),
    }
    if message is not None:
        crumb["message"] = message
    if category is not None:
        crumb["category"] = category
    if data:
        crumb["data"] = data
    return crumb


class BreadcrumbRecorder:
    """Bounded, ordered trail of breadcrumbs for a single scope.

    Once ``capacity`` entries are held, appending evicts the oldest one.
    Entries are copied on the way in and on the way out, so neither the
    caller nor an event built from :py:meth:`snapshot` can change what is
    recorded.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_MAX_BREADCRUMBS,
        before_breadcrumb: "Optional[BreadcrumbProcessor]" = None,
        sensitive_keys: "Iterable[str]" = DEFAULT_SENSITIVE_KEYS,
    ) -> None:
        if capacity < 0:
            raise ValueError("Breadcrumb capacity must not be negative, got %r" % capacity)
        self.capacity = capacity
        self.before_breadcrumb = before_breadcrumb
        self.sensitive_keys = frozenset(sensitive_keys)
        self.truncated = 0
        self._crumbs: "deque[Breadcrumb]" = deque()

    def __len__(self) -> int:
        return len(self._crumbs)

    def __iter__(self) -> "Iterator[Breadcrumb]":
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return "<%s capacity=%s len=%s truncated=%s>" % (
            self.__class__.__name__,
            self.capacity,
            len(self._crumbs),
            self.truncated,
        )

    def append(
        self,
        crumb: "Optional[Breadcrumb]" = None,
        hint: "Optional[BreadcrumbHint]" = None,
        **kwargs: "Any",
    ) -> bool:
        """
        Records a breadcrumb.

        :param crumb: Dictionary with ``message``, ``category``, ``level``,
            ``type``, ``data`` and ``timestamp`` keys, all optional.

        :param hint: An optional value that is passed to ``before_breadcrumb``
            alongside the breadcrumb.

        :returns: ``True`` if the breadcrumb was recorded.
        """
        new_crumb: "Breadcrumb" = dict(crumb or ())  # type: ignore
        new_crumb.update(kwargs)  # type: ignore
        new_crumb = _copy_crumb(new_crumb)  # type: ignore
        if not new_crumb:
            return False

        if new_crumb.get("timestamp") is None:
            new_crumb["timestamp"] = datetime.now(timezone.utc)
        if new_crumb.get("type") is None:
            new_crumb["type"] = "default"
        if new_crumb.get("level") not in LEVELS:
            new_crumb["level"] = "info"
        if new_crumb.get("data") is not None:
            new_crumb["data"] = redact(new_crumb["data"], self.sensitive_keys)

        if self.before_breadcrumb is not None:
            try:
                processed = self.before_breadcrumb(new_crumb, dict(hint or ()))
            except Exception:
                capture_internal_exception(sys.exc_info())
                return False
            if processed is None:
                logger.info("before breadcrumb dropped breadcrumb (%s)", new_crumb)
                return False
            new_crumb = processed

        self._crumbs.append(new_crumb)
        while len(self._crumbs) > self.capacity:
            self._crumbs.popleft()
            self.truncated += 1
        return True

    def snapshot(self) -> "List[Breadcrumb]":
        return [_copy_crumb(crumb) for crumb in self._crumbs]  # type: ignore

    def clear(self) -> None:
        self._crumbs.clear()
        self.truncated = 0

    def copy(self) -> "BreadcrumbRecorder":
        rv = object.__new__(self.__class__)
        rv.capacity = self.capacity
        rv.before_breadcrumb = self.before_breadcrumb
        rv.sensitive_keys = self.sensitive_keys
        rv.truncated = self.truncated
        rv._crumbs = deque(self.snapshot())
        return rv

from time import perf_counter

from crumbtrail.consts import MAX_BREADCRUMB_MESSAGE_LENGTH, BreadcrumbCategory
from crumbtrail.integrations import Integration, get_enabled
from crumbtrail.utils import capture_internal_exceptions, truncate

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, Optional


DEFAULT_SLOW_THRESHOLD_MS = 50

# Operations slower than this are recorded as warnings.
WARNING_THRESHOLD_MS = 100


class CacheIntegration(Integration):
    identifier = "cache"

    @staticmethod
    def setup_once() -> None:
        pass


class InstrumentedCache:
    """
    Wraps a cache object with ``get``, ``set``, ``delete`` and ``has``
    methods and records slow operations as breadcrumbs.

    .. code-block:: python

        cache = InstrumentedCache(redis_cache, slow_threshold_ms=20)

    Any other attribute is looked up on the wrapped cache.
    """

    def __init__(
        self, backend: "Any", slow_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS
    ) -> None:
        self.backend = backend
        self.slow_threshold_ms = slow_threshold_ms

    def __getattr__(self, name: str) -> "Any":
        return getattr(self.backend, name)

    def __repr__(self) -> str:
        return "<%s backend=%r>" % (self.__class__.__name__, self.backend)

    def _record(
        self,
        operation: str,
        key: "Any",
        start: float,
        hit: "Optional[bool]" = None,
    ) -> None:
        with capture_internal_exceptions():
            duration_ms = round((perf_counter() - start) * 1000, 2)
            if duration_ms < self.slow_threshold_ms:
                return

            integration, scope, _ = get_enabled(CacheIntegration)
            if integration is None or scope is None:
                return

            key_text = truncate(key, MAX_BREADCRUMB_MESSAGE_LENGTH)
            if hit is None:
                message = "Cache %s: %s" % (operation, key_text)
            else:
                message = "Cache %s %s: %s" % (
                    operation,
                    "HIT" if hit else "MISS",
                    key_text,
                )

            data: "Dict[str, Any]" = {
                "operation": operation,
                "key": key_text,
                "duration_ms": duration_ms,
            }
            if hit is not None:
                data["hit"] = hit

            scope.add_breadcrumb(
                category=BreadcrumbCategory.CACHE,
                type="cache",
                level="warning" if duration_ms > WARNING_THRESHOLD_MS else "info",
                message=truncate(message, MAX_BREADCRUMB_MESSAGE_LENGTH),
                data=data,
            )

    def get(self, key: "Any", *args: "Any", **kwargs: "Any") -> "Any":
        start = perf_counter()
        rv = self.backend.get(key, *args, **kwargs)
        self._record("get", key, start, hit=rv is not None)
        return rv

    def set(self, key: "Any", value: "Any", *args: "Any", **kwargs: "Any") -> "Any":
        start = perf_counter()
        rv = self.backend.set(key, value, *args, **kwargs)
        self._record("set", key, start)
        return rv

    def delete(self, key: "Any", *args: "Any", **kwargs: "Any") -> "Any":
        start = perf_counter()
        rv = self.backend.delete(key, *args, **kwargs)
        self._record("delete", key, start)
        return rv

    def has(self, key: "Any", *args: "Any", **kwargs: "Any") -> "Any":
        start = perf_counter()
        rv = self.backend.has(key, *args, **kwargs)
        self._record("has", key, start, hit=bool(rv))
        return rv

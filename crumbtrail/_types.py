from enum import Enum
from typing import TYPE_CHECKING, Any, NamedTuple, Optional


class FailureKind(Enum):
    """Why an internal step produced no value."""

    EXTRACTION = "extraction"
    CAPTURE = "capture"
    HOOK = "hook"


class Result(NamedTuple):
    """Outcome of an internal step that must not raise into the host.

    ``failure`` is ``None`` when the step succeeded, in which case
    ``value`` holds its output (which may itself be ``None``).
    """

    value: Any = None
    failure: "Optional[FailureKind]" = None

    @property
    def ok(self) -> bool:
        return self.failure is None


if TYPE_CHECKING:
    from collections.abc import Mapping, MutableMapping
    from datetime import datetime
    from types import TracebackType
    from typing import Callable, Dict, List, Tuple, Type, Union

    from typing_extensions import Literal, TypedDict

    LogLevelStr = Literal["fatal", "error", "warning", "info", "debug"]

    Breadcrumb = TypedDict(
        "Breadcrumb",
        {
            "category": str,
            "data": Dict[str, Any],
            "level": LogLevelStr,
            "message": str,
            "timestamp": datetime,
            "type": str,
        },
        total=False,
    )

    Event = TypedDict(
        "Event",
        {
            "breadcrumbs": Dict[Literal["values"], List[Breadcrumb]],
            "contexts": Dict[str, Any],
            "environment": Optional[str],
            "event_id": str,
            "exception": Dict[str, Any],
            "extra": MutableMapping[str, object],
            "level": LogLevelStr,
            "message": str,
            "platform": Literal["python"],
            "release": Optional[str],
            "sdk": Mapping[str, object],
            "server_name": str,
            "start_timestamp": datetime,
            "status": Optional[str],
            "tags": MutableMapping[str, str],
            "timestamp": datetime,
            "transaction": str,
            "transaction_info": Mapping[str, Any],
            "type": Literal["transaction"],
            "user": Dict[str, object],
        },
        total=False,
    )

    ExcInfo = Union[
        Tuple[Type[BaseException], BaseException, Optional[TracebackType]],
        Tuple[None, None, None],
    ]

    Hint = Dict[str, Any]
    BreadcrumbHint = Dict[str, Any]

    EventProcessor = Callable[[Event, Hint], Optional[Event]]
    BreadcrumbProcessor = Callable[[Breadcrumb, BreadcrumbHint], Optional[Breadcrumb]]

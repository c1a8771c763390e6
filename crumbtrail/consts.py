from __future__ import annotations
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict


VERSION = "1.0.0"

SDK_INFO = {
    "name": "crumbtrail",
    "version": VERSION,
}

DEFAULT_QUEUE_SIZE = 100
DEFAULT_MAX_BREADCRUMBS = 100
DEFAULT_SHUTDOWN_TIMEOUT = 2

# Longest message/statement/key text recorded on a breadcrumb.
MAX_BREADCRUMB_MESSAGE_LENGTH = 200

FILTERED = "[FILTERED]"

DEFAULT_SENSITIVE_KEYS = frozenset(
    (
        "password",
        "passwd",
        "secret",
        "token",
        "api_key",
        "private_key",
        "auth",
        "credit_card",
        "cvv",
        "ssn",
    )
)

# Keys the WSGI facade reads from the environ. Host frameworks (or the
# dispatch hook) put the corresponding objects there.
ENVIRON_USER = "crumbtrail.user"
ENVIRON_SESSION = "crumbtrail.session"
ENVIRON_PARAMS = "crumbtrail.params"
ENVIRON_ROUTE = "crumbtrail.route"
ENVIRON_FORMAT = "crumbtrail.format"
ENVIRON_EVENT_ID = "crumbtrail.event_id"

# Attribute set on a request object whose failure was reported.
EVENT_ID_ATTRIBUTE = "crumbtrail_event_id"


class SPANSTATUS:
    ALREADY_EXISTS = "already_exists"
    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    FAILED_PRECONDITION = "failed_precondition"
    INTERNAL_ERROR = "internal_error"
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    OK = "ok"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    UNAUTHENTICATED = "unauthenticated"
    UNAVAILABLE = "unavailable"
    UNIMPLEMENTED = "unimplemented"
    UNKNOWN_ERROR = "unknown_error"


class OP:
    CACHE = "cache"
    CONTROLLER = "controller"
    DB = "db"
    HTTP_SERVER = "http.server"


class TransactionSource:
    CUSTOM = "custom"
    URL = "url"
    VIEW = "view"


class BreadcrumbCategory:
    CACHE = "cache"
    CONTROLLER = "controller"
    DB = "db"
    LOG = "log"
    REQUEST = "http.request"


DEFAULT_OPTIONS: "Dict[str, Any]" = {
    "dsn": None,
    "environment": None,
    "enabled_environments": (),
    "release": None,
    "server_name": None,
    "project_root": None,
    "sample_rate": 1.0,
    "traces_sample_rate": None,
    "max_breadcrumbs": DEFAULT_MAX_BREADCRUMBS,
    "before_send": None,
    "before_breadcrumb": None,
    "sensitive_keys": DEFAULT_SENSITIVE_KEYS,
    "ignore_errors": (),
    "debug": False,
    "transport": None,
    "transport_queue_size": DEFAULT_QUEUE_SIZE,
    "shutdown_timeout": DEFAULT_SHUTDOWN_TIMEOUT,
    "http_proxy": None,
    "https_proxy": None,
    "ca_certs": None,
    "integrations": (),
    "default_integrations": True,
}

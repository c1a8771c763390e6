from crumbtrail.scope import Scope, ScopeManager, NoActiveScope
from crumbtrail.transport import Transport, HttpTransport
from crumbtrail.client import Client
from crumbtrail.middleware import RequestMiddleware, WsgiMiddleware

from crumbtrail.api import *  # noqa

from crumbtrail.consts import VERSION  # noqa

__all__ = [  # noqa
    "Scope",
    "ScopeManager",
    "NoActiveScope",
    "Client",
    "Transport",
    "HttpTransport",
    "RequestMiddleware",
    "WsgiMiddleware",
    "integrations",
    # From crumbtrail.api
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

# Initialize the debug support after everything is loaded
from crumbtrail.debug import init_debug_support

init_debug_support()
del init_debug_support

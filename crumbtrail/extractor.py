"""
Request context extraction.

The extractor reads whatever a request object offers and turns it into
the ``user``, ``request``, ``session``, ``tags`` and ``params`` sections of
a scope. What a request offers is described by the small capability
protocols below; a request object only needs to implement the ones it
can answer. Every value is redacted before it leaves this module.
"""

import sys
from collections.abc import Mapping
from http.cookies import CookieError, SimpleCookie
from urllib.parse import parse_qs, unquote_plus

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from crumbtrail._types import FailureKind, Result
from crumbtrail.consts import (
    DEFAULT_SENSITIVE_KEYS,
    ENVIRON_FORMAT,
    ENVIRON_PARAMS,
    ENVIRON_ROUTE,
    ENVIRON_SESSION,
    ENVIRON_USER,
    FILTERED,
)
from crumbtrail.redactor import is_sensitive_key, redact
from crumbtrail.utils import capture_internal_exception, logger

if TYPE_CHECKING:
    from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple


FIELDS = ("user", "request", "session", "tags", "params")

USER_FIELDS = ("username", "email", "name")

_ACCEPT_FORMATS = {
    "text/html": "html",
    "application/json": "json",
    "application/xml": "xml",
    "text/xml": "xml",
    "text/plain": "text",
    "text/csv": "csv",
    "application/javascript": "js",
    "text/javascript": "js",
}


@runtime_checkable
class HasCurrentUser(Protocol):
    def current_user(self) -> "Any": ...


@runtime_checkable
class HasRequestLine(Protocol):
    method: str
    scheme: str
    host: str
    path: str


@runtime_checkable
class HasEnviron(Protocol):
    environ: "Mapping[str, Any]"


@runtime_checkable
class HasCookies(Protocol):
    def cookies(self) -> "Mapping[str, Any]": ...


@runtime_checkable
class HasSession(Protocol):
    def session(self) -> "Optional[Mapping[str, Any]]": ...


@runtime_checkable
class HasParams(Protocol):
    def params(self) -> "Optional[Mapping[str, Any]]": ...


@runtime_checkable
class HasRoute(Protocol):
    controller_name: "Optional[str]"
    action_name: "Optional[str]"


@runtime_checkable
class HasFormat(Protocol):
    format: "Optional[str]"


@runtime_checkable
class HasCrumbtrailContext(Protocol):
    """Implemented by user objects that contribute extra attributes."""

    def crumbtrail_context(self) -> "Mapping[str, Any]": ...


def _guard(fn: "Callable[[], Any]") -> Result:
    try:
        return Result(fn())
    except Exception:
        capture_internal_exception(sys.exc_info())
        return Result(failure=FailureKind.EXTRACTION)


def get_headers(environ: "Mapping[str, Any]") -> "Iterator[Tuple[str, str]]":
    """
    Returns the request headers found in a CGI style environ, without the
    raw cookie header.
    """
    for key, value in environ.items():
        if not isinstance(key, str):
            continue
        if key.startswith("HTTP_") and key not in {
            "HTTP_COOKIE",
            "HTTP_CONTENT_TYPE",
            "HTTP_CONTENT_LENGTH",
        }:
            yield key[5:].replace("_", "-").title(), value
        elif key in {"CONTENT_TYPE", "CONTENT_LENGTH"} and value:
            yield key.replace("_", "-").title(), value


def get_client_ip(environ: "Mapping[str, Any]") -> "Optional[str]":
    try:
        forwarded = environ["HTTP_X_FORWARDED_FOR"].split(",")[0].strip()
        if forwarded:
            return forwarded
    except (KeyError, IndexError, AttributeError):
        pass

    return environ.get("REMOTE_ADDR")


def format_from_accept(accept: "Optional[str]") -> "Optional[str]":
    if not accept:
        return None
    for part in accept.split(","):
        mimetype = part.split(";", 1)[0].strip().lower()
        if mimetype in _ACCEPT_FORMATS:
            return _ACCEPT_FORMATS[mimetype]
    return None


def redact_query_string(
    query_string: str, sensitive_keys: "Iterable[str]" = DEFAULT_SENSITIVE_KEYS
) -> str:
    """
    Replaces the values of sensitive parameters in a raw query string,
    keeping everything else as it was sent.
    """
    if not query_string:
        return query_string

    parts = []
    for part in query_string.split("&"):
        name, sep, _ = part.partition("=")
        if sep and is_sensitive_key(unquote_plus(name), sensitive_keys):
            part = "%s=%s" % (name, FILTERED)
        parts.append(part)
    return "&".join(parts)


def _flatten_query(query_string: str) -> "Dict[str, Any]":
    rv: "Dict[str, Any]" = {}
    for key, values in parse_qs(query_string, keep_blank_values=True).items():
        rv[key] = values[0] if len(values) == 1 else values
    return rv


class WsgiRequest:
    """Request facade over a WSGI environ.

    Frameworks (or the dispatch hook) hand over user, session, parameters,
    route and format by storing them under the ``crumbtrail.*`` environ
    keys.
    """

    def __init__(self, environ: "Dict[str, Any]") -> None:
        self.environ = environ

    @property
    def method(self) -> str:
        return self.environ.get("REQUEST_METHOD", "GET")

    @property
    def scheme(self) -> str:
        return self.environ.get("wsgi.url_scheme", "http")

    @property
    def host(self) -> str:
        environ = self.environ
        host = environ.get("HTTP_HOST")
        if host:
            return host
        host = environ.get("SERVER_NAME", "")
        port = environ.get("SERVER_PORT")
        if port and (self.scheme, str(port)) not in (("http", "80"), ("https", "443")):
            host = "%s:%s" % (host, port)
        return host

    @property
    def path(self) -> str:
        script_name = self.environ.get("SCRIPT_NAME", "").rstrip("/")
        path_info = self.environ.get("PATH_INFO", "").lstrip("/")
        return "%s/%s" % (script_name, path_info)

    @property
    def route(self) -> "Tuple[Optional[str], Optional[str]]":
        route = self.environ.get(ENVIRON_ROUTE)
        if not route:
            return None, None
        controller, action = route
        return controller, action

    @property
    def controller_name(self) -> "Optional[str]":
        return self.route[0]

    @property
    def action_name(self) -> "Optional[str]":
        return self.route[1]

    @property
    def format(self) -> "Optional[str]":
        return self.environ.get(ENVIRON_FORMAT) or format_from_accept(
            self.environ.get("HTTP_ACCEPT")
        )

    def current_user(self) -> "Any":
        return self.environ.get(ENVIRON_USER)

    def cookies(self) -> "Dict[str, str]":
        raw = self.environ.get("HTTP_COOKIE")
        if not raw:
            return {}
        cookie = SimpleCookie()
        try:
            cookie.load(raw)
        except CookieError:
            logger.debug("Ignoring malformed cookie header")
            return {}
        return {key: morsel.value for key, morsel in cookie.items()}

    def session(self) -> "Optional[Mapping[str, Any]]":
        session = self.environ.get(ENVIRON_SESSION)
        if session is None:
            session = self.environ.get("beaker.session")
        return session

    def params(self) -> "Dict[str, Any]":
        rv = _flatten_query(self.environ.get("QUERY_STRING", ""))
        extra = self.environ.get(ENVIRON_PARAMS)
        if extra:
            rv.update(extra)
        return rv


def _extract_user(
    request: "Any",
    user_attributes: "Optional[Mapping[str, Any]]",
) -> "Optional[Dict[str, Any]]":
    if not isinstance(request, HasCurrentUser):
        return None

    user = request.current_user()
    if user is None:
        return None

    if isinstance(user, Mapping):
        rv = {"id": user.get("id")}
        rv.update((k, user[k]) for k in USER_FIELDS if user.get(k) is not None)
        if "username" not in rv and user.get("login") is not None:
            rv["username"] = user["login"]
    else:
        rv = {"id": getattr(user, "id", None)}
        for attr in USER_FIELDS:
            value = getattr(user, attr, None)
            if value is not None:
                rv[attr] = value
        if "username" not in rv:
            login = getattr(user, "login", None)
            if login is not None:
                rv["username"] = login

    if isinstance(user, HasCrumbtrailContext):
        rv.update(user.crumbtrail_context() or {})
    if user_attributes:
        rv.update(user_attributes)

    return rv


def _extract_request(request: "Any", keys: "Iterable[str]") -> "Dict[str, Any]":
    rv: "Dict[str, Any]" = {}

    if isinstance(request, HasRequestLine):
        rv["url"] = "%s://%s%s" % (request.scheme, request.host, request.path)
        rv["method"] = request.method

    if isinstance(request, HasEnviron):
        environ = request.environ
        rv["headers"] = dict(get_headers(environ))
        rv["query_string"] = redact_query_string(environ.get("QUERY_STRING", ""), keys)
        rv["remote_ip"] = get_client_ip(environ)
        rv["user_agent"] = environ.get("HTTP_USER_AGENT")

    return rv


def _extract_tags(request: "Any") -> "Dict[str, str]":
    tags: "Dict[str, Any]" = {}

    if isinstance(request, HasRoute):
        tags["controller_name"] = request.controller_name
        tags["action_name"] = request.action_name
    if isinstance(request, HasFormat):
        tags["format"] = request.format
    if isinstance(request, HasRequestLine):
        tags["http_method"] = request.method
    if isinstance(request, HasEnviron):
        tags["request_id"] = request.environ.get("HTTP_X_REQUEST_ID")

    return {k: str(v) for k, v in tags.items() if v is not None}


def extract_fields(
    request: "Any",
    sensitive_keys: "Iterable[str]" = DEFAULT_SENSITIVE_KEYS,
    user_attributes: "Optional[Mapping[str, Any]]" = None,
) -> "Dict[str, Result]":
    """Runs every extraction step and returns one result per field."""
    keys = frozenset(sensitive_keys)

    def user() -> "Any":
        rv = _extract_user(request, user_attributes)
        return redact(rv, keys) if rv is not None else None

    def request_info() -> "Dict[str, Any]":
        return redact(_extract_request(request, keys), keys)

    def session() -> "Dict[str, Any]":
        if not isinstance(request, HasSession):
            return {}
        return redact(dict(request.session() or {}), keys)

    def params() -> "Dict[str, Any]":
        if not isinstance(request, HasParams):
            return {}
        return redact(dict(request.params() or {}), keys)

    rv = {
        "user": _guard(user),
        "request": _guard(request_info),
        "session": _guard(session),
        "tags": _guard(lambda: _extract_tags(request)),
        "params": _guard(params),
    }

    # Cookies fail on their own without taking the rest of the request
    # section down with them.
    if rv["request"].ok and isinstance(request, HasCookies):
        cookies = _guard(lambda: redact(dict(request.cookies() or {}), keys))
        if cookies.ok:
            rv["request"].value["cookies"] = cookies.value

    return rv


def extract(
    request: "Any",
    sensitive_keys: "Iterable[str]" = DEFAULT_SENSITIVE_KEYS,
    user_attributes: "Optional[Mapping[str, Any]]" = None,
) -> "Dict[str, Any]":
    """
    Extracts the context of ``request``.

    Returns a dict with ``user``, ``request``, ``session``, ``tags`` and
    ``params`` keys. A field whose capability raised is left out and the
    error is logged to the ``crumbtrail.errors`` logger.
    """
    rv = {}
    for field, result in extract_fields(request, sensitive_keys, user_attributes).items():
        if result.ok:
            rv[field] = result.value
        else:
            logger.debug("Omitting %s from request context", field)
    return rv

import copy
import json
import linecache
import logging
import os
import subprocess
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from urllib.parse import urlsplit

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import FrameType, TracebackType
    from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

    from crumbtrail._types import ExcInfo


# The logger is created here but initialized in the debug support module
logger = logging.getLogger("crumbtrail.errors")

MAX_STRING_LENGTH = 512

CONTEXT_LINES = 5


@contextmanager
def capture_internal_exceptions() -> "Iterator[None]":
    try:
        yield
    except Exception:
        capture_internal_exception(sys.exc_info())


def capture_internal_exception(exc_info: "ExcInfo") -> None:
    """
    Capture an exception that is likely caused by a bug in the SDK
    itself.

    These exceptions do not end up in the transport and are only logged
    if debug mode is enabled.
    """
    logger.error("Internal error in crumbtrail", exc_info=exc_info)


def format_timestamp(value: "datetime") -> str:
    """Formats a timestamp in RFC 3339 format.

    Any datetime objects with a non-UTC timezone are converted to UTC, so that all timestamps are formatted in UTC.
    """
    utctime = value.astimezone(timezone.utc)

    # We use this custom formatting rather than isoformat for backwards compatibility (we have used this format for
    # several years now), and isoformat is slightly different.
    return utctime.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _json_default(value: "Any") -> "Any":
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, (set, frozenset)):
        return sorted(safe_str(x) for x in value)
    return safe_repr(value)


def json_dumps(data: "Any") -> bytes:
    """Serialize data into a compact JSON representation encoded as UTF-8."""
    return json.dumps(
        data, allow_nan=False, separators=(",", ":"), default=_json_default
    ).encode("utf-8")


class BadDsn(ValueError):
    """Raised on invalid DSNs."""


class Dsn:
    """Represents a DSN."""

    def __init__(self, value: "Union[Dsn, str]") -> None:
        if isinstance(value, Dsn):
            self.__dict__ = dict(value.__dict__)
            return
        parts = urlsplit(str(value))

        if parts.scheme not in ("http", "https"):
            raise BadDsn("Unsupported scheme %r" % parts.scheme)
        self.scheme = parts.scheme

        if parts.hostname is None:
            raise BadDsn("Missing hostname")

        self.host = parts.hostname

        if parts.port is None:
            self.port: int = self.scheme == "https" and 443 or 80
        else:
            self.port = parts.port

        if not parts.username:
            raise BadDsn("Missing public key")

        self.public_key = parts.username
        self.secret_key = parts.password

        path = parts.path.rsplit("/", 1)

        try:
            self.project_id = str(int(path.pop()))
        except (ValueError, TypeError):
            raise BadDsn("Invalid project in DSN (%r)" % (parts.path or "")[1:])

        self.path = "/".join(path) + "/"

    @property
    def netloc(self) -> str:
        """The netloc part of a DSN."""
        rv = self.host
        if (self.scheme, self.port) not in (("http", 80), ("https", 443)):
            rv = "%s:%s" % (rv, self.port)
        return rv

    def to_auth(self, client: "Optional[Any]" = None) -> "Auth":
        """Returns the auth info object for this dsn."""
        return Auth(
            scheme=self.scheme,
            host=self.netloc,
            path=self.path,
            project_id=self.project_id,
            public_key=self.public_key,
            secret_key=self.secret_key,
            client=client,
        )

    def __str__(self) -> str:
        return "%s://%s%s@%s%s%s" % (
            self.scheme,
            self.public_key,
            self.secret_key and ":" + self.secret_key or "",
            self.netloc,
            self.path,
            self.project_id,
        )


class Auth:
    """Helper object that represents the auth info."""

    def __init__(
        self,
        scheme: str,
        host: str,
        project_id: str,
        public_key: str,
        secret_key: "Optional[str]" = None,
        version: int = 7,
        client: "Optional[Any]" = None,
        path: str = "/",
    ) -> None:
        self.scheme = scheme
        self.host = host
        self.path = path
        self.project_id = project_id
        self.public_key = public_key
        self.secret_key = secret_key
        self.version = version
        self.client = client

    @property
    def store_api_url(self) -> str:
        """Returns the API url for storing events."""
        return "%s://%s%sapi/%s/store/" % (
            self.scheme,
            self.host,
            self.path,
            self.project_id,
        )

    def to_header(self) -> str:
        """Returns the auth header a string."""
        rv = [("sentry_key", self.public_key), ("sentry_version", self.version)]
        if self.client is not None:
            rv.append(("sentry_client", self.client))
        if self.secret_key is not None:
            rv.append(("sentry_secret", self.secret_key))
        return "Sentry " + ", ".join("%s=%s" % (key, value) for key, value in rv)


def get_type_name(cls: "Optional[type]") -> "Optional[str]":
    return getattr(cls, "__qualname__", None) or getattr(cls, "__name__", None)


def get_type_module(cls: "Optional[type]") -> "Optional[str]":
    mod = getattr(cls, "__module__", None)
    if mod not in (None, "builtins", "__builtins__"):
        return mod
    return None


def should_hide_frame(frame: "FrameType") -> bool:
    try:
        mod = frame.f_globals["__name__"]
        if mod.startswith("crumbtrail."):
            return True
    except (AttributeError, KeyError):
        pass

    for flag_name in "__traceback_hide__", "__tracebackhide__":
        try:
            if frame.f_locals[flag_name]:
                return True
        except Exception:
            pass

    return False


def iter_stacks(tb: "Optional[TracebackType]") -> "Iterator[TracebackType]":
    tb_: "Optional[TracebackType]" = tb
    while tb_ is not None:
        if not should_hide_frame(tb_.tb_frame):
            yield tb_
        tb_ = tb_.tb_next


def truncate(value: "Any", length: int) -> str:
    """Coerces to text and cuts to at most ``length`` characters."""
    text = safe_str(value)
    if len(text) > length:
        return text[:length]
    return text


def slim_string(value: str, length: int = MAX_STRING_LENGTH) -> str:
    if not value:
        return value
    if len(value) > length:
        return value[: length - 3] + "..."
    return value[:length]


def get_lines_from_file(
    filename: str,
    lineno: int,
    loader: "Optional[Any]" = None,
    module: "Optional[str]" = None,
) -> "Tuple[List[str], Optional[str], List[str]]":
    source = None
    if loader is not None and hasattr(loader, "get_source"):
        try:
            source_str: "Optional[str]" = loader.get_source(module)
        except (ImportError, IOError):
            source_str = None
        if source_str is not None:
            source = source_str.splitlines()

    if source is None:
        try:
            source = linecache.getlines(filename)
        except (OSError, IOError):
            return [], None, []

    if not source:
        return [], None, []

    lower_bound = max(0, lineno - CONTEXT_LINES)
    upper_bound = min(lineno + 1 + CONTEXT_LINES, len(source))

    try:
        pre_context = [
            slim_string(line.strip("\r\n")) for line in source[lower_bound:lineno]
        ]
        context_line = slim_string(source[lineno].strip("\r\n"))
        post_context = [
            slim_string(line.strip("\r\n"))
            for line in source[(lineno + 1) : upper_bound]
        ]
        return pre_context, context_line, post_context
    except IndexError:
        # the file may have changed since it was loaded into memory
        return [], None, []


def get_source_context(
    frame: "FrameType", tb_lineno: int
) -> "Tuple[List[str], Optional[str], List[str]]":
    try:
        abs_path: "Optional[str]" = frame.f_code.co_filename
    except Exception:
        abs_path = None
    try:
        module = frame.f_globals["__name__"]
    except Exception:
        return [], None, []
    try:
        loader = frame.f_globals["__loader__"]
    except Exception:
        loader = None
    lineno = tb_lineno - 1
    if lineno is not None and abs_path:
        return get_lines_from_file(abs_path, lineno, loader, module)
    return [], None, []


def safe_str(value: "Any") -> str:
    try:
        return str(value)
    except Exception:
        return safe_repr(value)


def safe_repr(value: "Any") -> str:
    try:
        return repr(value)
    except Exception:
        return "<broken repr>"


def filename_for_module(
    module: "Optional[str]", abs_path: "Optional[str]"
) -> "Optional[str]":
    if not abs_path or not module:
        return abs_path

    try:
        if abs_path.endswith(".pyc"):
            abs_path = abs_path[:-1]

        base_module = module.split(".", 1)[0]
        if base_module == module:
            return os.path.basename(abs_path)

        base_module_path = sys.modules[base_module].__file__
        if not base_module_path:
            return abs_path

        return abs_path.split(base_module_path.rsplit(os.sep, 2)[0], 1)[-1].lstrip(
            os.sep
        )
    except Exception:
        return abs_path


def _is_in_project_root(
    abs_path: "Optional[str]", project_root: "Optional[str]"
) -> bool:
    if abs_path is None or project_root is None:
        return False

    # we're assuming that the project_root is the absolute path of the project
    if abs_path.startswith(project_root):
        # the path may be in the project root but be a dependency installed there
        return "site-packages" not in abs_path and "dist-packages" not in abs_path

    return False


def serialize_frame(
    frame: "FrameType",
    tb_lineno: "Optional[int]" = None,
    project_root: "Optional[str]" = None,
) -> "Dict[str, Any]":
    f_code = getattr(frame, "f_code", None)
    if not f_code:
        abs_path = None
        function = None
    else:
        abs_path = frame.f_code.co_filename
        function = frame.f_code.co_name
    try:
        module = frame.f_globals["__name__"]
    except Exception:
        module = None

    if tb_lineno is None:
        tb_lineno = frame.f_lineno

    pre_context, context_line, post_context = get_source_context(frame, tb_lineno)

    abs_path = os.path.abspath(abs_path) if abs_path else None

    return {
        "filename": filename_for_module(module, abs_path) or None,
        "abs_path": abs_path,
        "function": function or "<unknown>",
        "module": module,
        "lineno": tb_lineno,
        "in_app": _is_in_project_root(abs_path, project_root),
        "pre_context": pre_context,
        "context_line": context_line,
        "post_context": post_context,
    }


def stacktrace_from_traceback(
    tb: "Optional[TracebackType]" = None,
    project_root: "Optional[str]" = None,
) -> "Dict[str, List[Dict[str, Any]]]":
    return {
        "frames": [
            serialize_frame(tb.tb_frame, tb_lineno=tb.tb_lineno, project_root=project_root)
            for tb in iter_stacks(tb)
        ]
    }


def single_exception_from_error_tuple(
    exc_type: "Optional[type]",
    exc_value: "Optional[BaseException]",
    tb: "Optional[TracebackType]",
    project_root: "Optional[str]" = None,
    mechanism: "Optional[Dict[str, Any]]" = None,
) -> "Dict[str, Any]":
    rv: "Dict[str, Any]" = {
        "module": get_type_module(exc_type),
        "type": get_type_name(exc_type),
        "value": safe_str(exc_value),
        "stacktrace": stacktrace_from_traceback(tb, project_root),
    }
    if mechanism is not None:
        rv["mechanism"] = mechanism
    return rv


def walk_exception_chain(exc_info: "ExcInfo") -> "Iterator[ExcInfo]":
    exc_type, exc_value, tb = exc_info

    seen_exceptions = []
    seen_exception_ids: "set[int]" = set()

    while (
        exc_type is not None
        and exc_value is not None
        and id(exc_value) not in seen_exception_ids
    ):
        yield exc_type, exc_value, tb

        # Avoid hashing random types we don't know anything
        # about. Use the list to keep a ref so that the `id` is
        # not used for another object.
        seen_exceptions.append(exc_value)
        seen_exception_ids.add(id(exc_value))

        if exc_value.__suppress_context__:
            cause = exc_value.__cause__
        else:
            cause = exc_value.__context__
        if cause is None:
            break
        exc_type = type(cause)
        exc_value = cause
        tb = getattr(cause, "__traceback__", None)


def exc_info_from_error(error: "Union[BaseException, ExcInfo]") -> "ExcInfo":
    if isinstance(error, tuple) and len(error) == 3:
        exc_type, exc_value, tb = error
    elif isinstance(error, BaseException):
        tb = getattr(error, "__traceback__", None)
        if tb is not None:
            exc_type = type(error)
            exc_value = error
        else:
            exc_type, exc_value, tb = sys.exc_info()
            if exc_value is not error:
                tb = None
                exc_value = error
                exc_type = type(error)

    else:
        raise ValueError("Expected Exception object to report, got %s!" % type(error))

    return exc_type, exc_value, tb


def exception_from_error(
    exc_info: "ExcInfo",
    project_root: "Optional[str]" = None,
    mechanism: "Optional[Dict[str, Any]]" = None,
) -> "Dict[str, Any]":
    """Serializes the outermost exception, with its causes under ``chained``."""
    exceptions = [
        single_exception_from_error_tuple(
            exc_type, exc_value, tb, project_root, mechanism
        )
        for exc_type, exc_value, tb in walk_exception_chain(exc_info)
    ]
    if not exceptions:
        return {}

    rv = exceptions[0]
    if len(exceptions) > 1:
        rv["chained"] = exceptions[1:]
    return rv


def get_git_revision(cwd: "Optional[str]" = None) -> "Optional[str]":
    try:
        with open(os.path.devnull, "w+") as null:
            # prevent command prompt windows from popping up on windows
            startupinfo = None
            if sys.platform == "win32" or sys.platform == "cygwin":
                startupinfo = subprocess.STARTUPINFO()
                startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW

            revision = (
                subprocess.Popen(
                    ["git", "rev-parse", "HEAD"],
                    startupinfo=startupinfo,
                    stdout=subprocess.PIPE,
                    stderr=null,
                    stdin=null,
                    cwd=cwd,
                )
                .communicate()[0]
                .strip()
                .decode("utf-8")
            )
    except (OSError, IOError, FileNotFoundError):
        return None

    return revision or None


def get_default_release(project_root: "Optional[str]" = None) -> "Optional[str]":
    """Try to guess a default release."""
    release = os.environ.get("CRUMBTRAIL_RELEASE")
    if release:
        return release

    if project_root:
        revision_file = os.path.join(project_root, "REVISION")
        try:
            with open(revision_file) as f:
                release = f.read().strip()
        except (OSError, IOError):
            release = None
        if release:
            return release[:12]

        if not os.path.exists(os.path.join(project_root, ".git")):
            return None

    release = get_git_revision(project_root)
    if release:
        return release[:12]

    return None


def safe_deepcopy(value: "Any") -> "Any":
    """Deep copies ``value``, replacing leaves that cannot be copied by their repr."""
    try:
        return copy.deepcopy(value)
    except Exception:
        pass

    if isinstance(value, dict):
        return {k: safe_deepcopy(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(safe_deepcopy(v) for v in value)
    return safe_repr(value)

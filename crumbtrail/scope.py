from contextlib import contextmanager
from contextvars import ContextVar, Token

from crumbtrail.breadcrumbs import BreadcrumbRecorder
from crumbtrail.consts import (
    DEFAULT_MAX_BREADCRUMBS,
    DEFAULT_SENSITIVE_KEYS,
    TransactionSource,
)
from crumbtrail.redactor import redact
from crumbtrail.utils import logger, safe_deepcopy

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Callable, Dict, Iterator, Optional, Tuple, TypeVar

    from crumbtrail._types import Breadcrumb, BreadcrumbHint
    from crumbtrail.client import Client
    from crumbtrail.tracing import Transaction

    T = TypeVar("T")


# Holds the scope of the request being handled by the current thread or
# asyncio task.
_current_scope: "ContextVar[Optional[Scope]]" = ContextVar(
    "crumbtrail_current_scope", default=None
)


class NoActiveScope(LookupError):
    """Raised when a scope is required outside of a request."""


def get_active_scope() -> "Optional[Scope]":
    return _current_scope.get()


@contextmanager
def use_scope(scope: "Scope") -> "Iterator[Scope]":
    """Makes ``scope`` the active scope for the duration of the block."""
    token = _current_scope.set(scope)
    try:
        yield scope
    finally:
        _current_scope.reset(token)


def _activate(scope: "Scope") -> None:
    scope._activation = _current_scope.set(scope)


def _deactivate(scope: "Scope") -> None:
    token = scope._activation
    scope._activation = None
    if token is None:
        return

    try:
        _current_scope.reset(token)
    except ValueError:
        # The token was created in a different context, e.g. the scope was
        # begun in a thread and ended in another one.
        previous = token.old_value
        _current_scope.set(None if previous is Token.MISSING else previous)


class Scope:
    """The scope holds the context of a single request.

    Every value put on a scope is redacted first. Events are built from
    :py:meth:`snapshot`, so changes made after a capture never reach an
    event that was already produced.
    """

    __slots__ = (
        "client",
        "_tags",
        "_contexts",
        "_user",
        "_extras",
        "_breadcrumbs",
        "_span",
        "_transaction",
        "_transaction_info",
        "_route",
        "_last_event_id",
        "_sensitive_keys",
        "_activation",
    )

    def __init__(self, client: "Optional[Client]" = None) -> None:
        self.client = client
        self._activation: "Optional[Token[Optional[Scope]]]" = None

        if client is not None:
            options = client.options
            self._sensitive_keys = frozenset(options["sensitive_keys"])
            self._breadcrumbs = BreadcrumbRecorder(
                capacity=options["max_breadcrumbs"],
                before_breadcrumb=options["before_breadcrumb"],
                sensitive_keys=self._sensitive_keys,
            )
        else:
            self._sensitive_keys = DEFAULT_SENSITIVE_KEYS
            self._breadcrumbs = BreadcrumbRecorder(capacity=DEFAULT_MAX_BREADCRUMBS)

        self.clear()

    def __repr__(self) -> str:
        return "<%s id=%s client=%r>" % (
            self.__class__.__name__,
            hex(id(self)),
            self.client,
        )

    def clear(self) -> None:
        """Clears the entire scope."""
        self._tags: "Dict[str, str]" = {}
        self._contexts: "Dict[str, Dict[str, Any]]" = {}
        self._user: "Optional[Dict[str, Any]]" = None
        self._extras: "Dict[str, Any]" = {}
        self._span: "Optional[Transaction]" = None
        self._transaction: "Optional[str]" = None
        self._transaction_info: "Dict[str, str]" = {}
        self._route: "Optional[Tuple[str, str]]" = None
        self._last_event_id: "Optional[str]" = None
        self._breadcrumbs.clear()

    def fork(self) -> "Scope":
        """
        Returns a copy of this scope.

        Breadcrumbs, tags, contexts and extras are copied, so changes made on
        the fork stay on the fork.
        """
        rv = object.__new__(self.__class__)

        rv.client = self.client
        rv._activation = None
        rv._sensitive_keys = self._sensitive_keys
        rv._tags = dict(self._tags)
        rv._contexts = safe_deepcopy(self._contexts)
        rv._user = safe_deepcopy(self._user)
        rv._extras = safe_deepcopy(self._extras)
        rv._breadcrumbs = self._breadcrumbs.copy()
        rv._span = self._span
        rv._transaction = self._transaction
        rv._transaction_info = dict(self._transaction_info)
        rv._route = self._route
        rv._last_event_id = self._last_event_id

        return rv

    def update_from_scope(self, scope: "Scope") -> None:
        """Update the scope with another scope's data."""
        if scope._tags:
            self._tags.update(scope._tags)
        if scope._contexts:
            self._contexts.update(safe_deepcopy(scope._contexts))
        if scope._user is not None:
            self._user = safe_deepcopy(scope._user)
        if scope._extras:
            self._extras.update(safe_deepcopy(scope._extras))
        if scope._transaction is not None:
            self._transaction = scope._transaction
            self._transaction_info = dict(scope._transaction_info)
        if scope._route is not None:
            self._route = scope._route
        if scope._span is not None:
            self._span = scope._span
        if scope._last_event_id is not None:
            self._last_event_id = scope._last_event_id
        self._breadcrumbs = scope._breadcrumbs.copy()

    def _redact(self, value: "Any") -> "Any":
        return redact(value, self._sensitive_keys)

    def set_tag(self, key: str, value: "Any") -> None:
        """
        Sets a tag for a key to a specific value.

        A tag whose key looks sensitive is stored filtered.
        """
        self._tags.update(self._redact({key: str(value)}))

    def set_tags(self, tags: "Dict[str, Any]") -> None:
        """Sets multiple tags at once."""
        self._tags.update(self._redact({k: str(v) for k, v in tags.items()}))

    def remove_tag(self, key: str) -> None:
        """Removes a specific tag."""
        self._tags.pop(key, None)

    @property
    def tags(self) -> "Dict[str, str]":
        return dict(self._tags)

    def set_context(self, key: str, value: "Dict[str, Any]") -> None:
        """Binds a context at a certain key to a specific value."""
        self._contexts[key] = self._redact(value)

    def remove_context(self, key: str) -> None:
        """Removes a context."""
        self._contexts.pop(key, None)

    def set_extra(self, key: str, value: "Any") -> None:
        """Sets an extra key to a specific value."""
        self._extras.update(self._redact({key: value}))

    def remove_extra(self, key: str) -> None:
        """Removes a specific extra key."""
        self._extras.pop(key, None)

    @property
    def user(self) -> "Optional[Dict[str, Any]]":
        return safe_deepcopy(self._user)

    def set_user(self, value: "Optional[Dict[str, Any]]") -> None:
        """Sets a user for the scope."""
        self._user = self._redact(value) if value is not None else None

    @property
    def transaction(self) -> "Optional[str]":
        return self._transaction

    @property
    def transaction_source(self) -> "Optional[str]":
        return self._transaction_info.get("source")

    def set_transaction_name(
        self, name: str, source: "Optional[str]" = None
    ) -> None:
        """Set the transaction name and optionally the transaction source."""
        self._transaction = name

        if self._span is not None:
            self._span.name = name
            if source:
                self._span.source = source

        if source:
            self._transaction_info["source"] = source

    @property
    def route(self) -> "Optional[Tuple[str, str]]":
        return self._route

    def set_route(self, controller: str, action: str) -> None:
        """
        Records the controller and action that handle the request.

        The transaction is renamed to ``Controller#action``.
        """
        self._route = (controller, action)
        self.set_tags({"controller_name": controller, "action_name": action})
        self.set_transaction_name(
            "%s#%s" % (controller, action), source=TransactionSource.VIEW
        )

    @property
    def span(self) -> "Optional[Transaction]":
        """Get current tracing span."""
        return self._span

    @span.setter
    def span(self, span: "Optional[Transaction]") -> None:
        self._span = span

    @property
    def last_event_id(self) -> "Optional[str]":
        return self._last_event_id

    @property
    def breadcrumbs(self) -> BreadcrumbRecorder:
        return self._breadcrumbs

    def add_breadcrumb(
        self,
        crumb: "Optional[Breadcrumb]" = None,
        hint: "Optional[BreadcrumbHint]" = None,
        **kwargs: "Any",
    ) -> bool:
        """
        Adds a breadcrumb.

        :param crumb: Dictionary with the data of the breadcrumb.

        :param hint: An optional value that can be used by `before_breadcrumb`
            to customize the breadcrumbs that are emitted.
        """
        return self._breadcrumbs.append(crumb, hint, **kwargs)

    def clear_breadcrumbs(self) -> None:
        """Clears breadcrumb buffer."""
        self._breadcrumbs.clear()

    def snapshot(self) -> "Dict[str, Any]":
        """Returns a deep copy of the state that goes into an event."""
        rv: "Dict[str, Any]" = {
            "tags": dict(self._tags),
            "contexts": safe_deepcopy(self._contexts),
            "user": safe_deepcopy(self._user),
            "extra": safe_deepcopy(self._extras),
            "breadcrumbs": self._breadcrumbs.snapshot(),
            "transaction": self._transaction,
            "transaction_info": dict(self._transaction_info),
            "route": self._route,
        }
        if self._span is not None:
            rv["contexts"]["trace"] = self._span.get_trace_context()
        return rv


class ScopeManager:
    """
    Creates and activates the scopes of a client.

    The active scope is kept in a context variable, so every thread and
    every asyncio task sees the scope of its own request and a scope
    survives an ``await``.
    """

    def __init__(self, client: "Optional[Client]" = None) -> None:
        self.client = client

    def begin_scope(self) -> Scope:
        """Creates a new scope and makes it the active one."""
        scope = Scope(client=self.client)
        _activate(scope)
        return scope

    def current(self) -> Scope:
        scope = _current_scope.get()
        if scope is None:
            raise NoActiveScope("No scope is active in this context")
        return scope

    def active(self) -> "Optional[Scope]":
        return _current_scope.get()

    def end_scope(self, scope: "Optional[Scope]" = None) -> None:
        """
        Deactivates ``scope`` (the active one by default). The scope that
        was active before it was begun becomes active again.
        """
        if scope is None:
            scope = _current_scope.get()
            if scope is None:
                logger.debug("end_scope called without an active scope")
                return
        scope._span = None
        _deactivate(scope)

    @contextmanager
    def request_scope(self) -> "Iterator[Scope]":
        scope = self.begin_scope()
        try:
            yield scope
        finally:
            self.end_scope(scope)

    @contextmanager
    def new_scope(self, merge: bool = False) -> "Iterator[Scope]":
        """
        Forks the active scope and activates the fork for the duration of
        the ``with`` block.

        :param merge: Copy the changes made on the fork back onto the
            original scope when the block is left.
        """
        parent = _current_scope.get()
        child = parent.fork() if parent is not None else Scope(client=self.client)
        token = _current_scope.set(child)
        try:
            yield child
        finally:
            _current_scope.reset(token)
            if merge and parent is not None:
                parent.update_from_scope(child)

    def with_scope(self, fn: "Callable[[Scope], T]", merge: bool = False) -> "T":
        """Calls ``fn`` with a forked scope, see :py:meth:`new_scope`."""
        with self.new_scope(merge=merge) as scope:
            return fn(scope)

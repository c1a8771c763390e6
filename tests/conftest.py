import pytest

import crumbtrail
import crumbtrail.api
import crumbtrail.utils
from crumbtrail import scope
from crumbtrail.transport import Transport

from tests import _warning_recorder, _warning_recorder_mgr

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Dict, List


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "tests_internal_exceptions: let internal errors be logged instead of "
        "failing the test",
    )


@pytest.fixture(autouse=True)
def clean_scopes():
    """
    Resets the active scope and the installed client for every test to avoid
    leaking data between tests.
    """
    scope._current_scope.set(None)
    yield
    scope._current_scope.set(None)
    crumbtrail.shutdown(timeout=0)


@pytest.fixture(autouse=True)
def internal_exceptions(request, monkeypatch):
    errors = []
    if "tests_internal_exceptions" in request.keywords:
        return

    def _capture_internal_exception(exc_info):
        errors.append(exc_info)

    @request.addfinalizer
    def _():
        # reraise the errors so that this just acts as a pass-through (that
        # happens to keep track of the errors which pass through it)
        for _, value, tb in errors:
            raise value.with_traceback(tb)

    monkeypatch.setattr(
        crumbtrail.utils, "capture_internal_exception", _capture_internal_exception
    )

    return errors


@pytest.fixture(autouse=True, scope="session")
def _capture_internal_warnings():
    yield

    _warning_recorder_mgr.__exit__(None, None, None)
    recorder = _warning_recorder

    for warning in recorder:
        if isinstance(warning.message, ResourceWarning):
            continue

        if "crumbtrail" not in str(warning.filename):
            continue

        raise AssertionError(warning)


class TestTransport(Transport):
    def __init__(self, options=None):
        Transport.__init__(self, options)
        self.events: "List[Dict[str, Any]]" = []

    def send(self, event):
        self.events.append(event)


@pytest.fixture
def crumbtrail_init():
    def inner(*a, **kw):
        kw.setdefault("transport", TestTransport())
        kw.setdefault("release", "test-release")
        return crumbtrail.init(*a, **kw)

    yield inner
    crumbtrail.shutdown(timeout=0)


@pytest.fixture
def capture_events(monkeypatch):
    def inner():
        events = []
        test_client = crumbtrail.get_client()
        old_send = test_client.transport.send

        def append_event(event):
            events.append(event)
            return old_send(event)

        monkeypatch.setattr(test_client.transport, "send", append_event)

        return events

    return inner


@pytest.fixture
def request_scope():
    """Runs the test body inside a scope of the installed client."""

    def inner():
        client = crumbtrail.get_client()
        return client.scopes.request_scope()

    return inner

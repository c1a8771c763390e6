import asyncio
import threading

import pytest

import crumbtrail
from crumbtrail import RequestMiddleware
from crumbtrail.extractor import WsgiRequest
from crumbtrail.middleware import get_response_status
from crumbtrail.scope import get_active_scope

from tests.conftest import TestTransport


class Request:
    scheme = "http"
    host = "localhost"

    def __init__(self, method, path, controller=None, action=None, user=None, params=None):
        self.method = method
        self.path = path
        self.controller_name = controller
        self.action_name = action
        self._user = user
        self._params = params

    def current_user(self):
        return self._user

    def params(self):
        return self._params


class Response:
    def __init__(self, status_code, body=""):
        self.status_code = status_code
        self.body = body


def posts_handler(request):
    crumbtrail.add_breadcrumb(message="Loading post", category="db")
    if request.path.endswith("/boom"):
        raise RuntimeError("boom")
    return Response(200, "post")


async def async_posts_handler(request):
    crumbtrail.add_breadcrumb(message="Loading post", category="db")
    await asyncio.sleep(0)
    if request.path.endswith("/boom"):
        raise RuntimeError("boom")
    return Response(200, "post")


def messages(event):
    return [c["message"] for c in event["breadcrumbs"]["values"]]


def test_not_initialized_delegates():
    app = RequestMiddleware(posts_handler)

    response = app(Request("GET", "/posts/1"))

    assert response.status_code == 200
    with pytest.raises(RuntimeError):
        app(Request("GET", "/posts/1/boom"))


def test_successful_request_sends_nothing(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    app = RequestMiddleware(posts_handler)

    response = app(Request("GET", "/posts/1", "PostsController", "show"))

    assert response.status_code == 200
    assert response.body == "post"
    assert events == []
    assert get_active_scope() is None


def test_boom_end_to_end(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    app = RequestMiddleware(posts_handler)

    request = Request(
        "GET",
        "/posts/1/boom",
        "PostsController",
        "boom",
        user={"id": 1, "login": "alice", "password": "hunter2"},
        params={"id": "1", "api_key": "k"},
    )
    with pytest.raises(RuntimeError) as excinfo:
        app(request)

    assert str(excinfo.value) == "boom"
    assert get_active_scope() is None

    (event,) = events
    exception = event["exception"]
    assert exception["type"] == "RuntimeError"
    assert exception["value"] == "boom"
    assert exception["mechanism"] == {"type": "crumbtrail.middleware", "handled": False}
    assert exception["stacktrace"]["frames"][-1]["function"] == "posts_handler"

    assert event["transaction"] == "PostsController#boom"
    assert event["transaction_info"] == {"source": "view"}
    assert event["tags"]["controller_name"] == "PostsController"
    assert event["tags"]["action_name"] == "boom"
    assert event["tags"]["http_method"] == "GET"
    assert event["user"] == {"id": 1, "username": "alice"}
    assert event["contexts"]["params"] == {"id": "1", "api_key": "[FILTERED]"}
    assert event["contexts"]["request"]["url"] == "http://localhost/posts/1/boom"

    assert messages(event) == [
        "Started GET /posts/1/boom",
        "Loading post",
        "Failed with RuntimeError",
    ]
    crumbs = event["breadcrumbs"]["values"]
    assert crumbs[0]["category"] == crumbs[-1]["category"] == "http.request"
    assert crumbs[-1]["level"] == "error"


def test_transaction_falls_back_to_path(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    app = RequestMiddleware(posts_handler)

    with pytest.raises(RuntimeError):
        app(Request("GET", "/posts/1/boom"))

    (event,) = events
    assert event["transaction"] == "/posts/1/boom"
    assert event["transaction_info"] == {"source": "url"}


def test_reraises_the_same_exception(crumbtrail_init):
    crumbtrail_init()
    error = KeyError("original")

    def handler(request):
        raise error

    with pytest.raises(KeyError) as excinfo:
        RequestMiddleware(handler)(Request("GET", "/"))

    assert excinfo.value is error
    assert excinfo.traceback[-1].name == "handler"


def test_captures_once(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    def handler(request):
        try:
            raise ValueError("reported by hand")
        except ValueError:
            crumbtrail.capture_exception()
            raise

    app = RequestMiddleware(RequestMiddleware(handler))

    with pytest.raises(ValueError):
        app(Request("POST", "/orders"))

    assert len(events) == 1


def test_previous_requests_leave_no_breadcrumbs(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    app = RequestMiddleware(posts_handler)

    for _ in range(3):
        app(Request("GET", "/posts/1"))
    with pytest.raises(RuntimeError):
        app(Request("GET", "/posts/2/boom"))

    (event,) = events
    assert messages(event) == [
        "Started GET /posts/2/boom",
        "Loading post",
        "Failed with RuntimeError",
    ]


@pytest.mark.parametrize("error", [KeyboardInterrupt, SystemExit])
def test_base_exceptions_are_not_captured(crumbtrail_init, capture_events, error):
    crumbtrail_init(traces_sample_rate=1.0)
    events = capture_events()

    def handler(request):
        raise error()

    with pytest.raises(error):
        RequestMiddleware(handler)(Request("GET", "/slow"))

    assert get_active_scope() is None
    (transaction,) = events
    assert transaction["type"] == "transaction"
    assert transaction["contexts"]["trace"]["status"] == "cancelled"


def test_broken_facade_still_handles_request(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    class BrokenUserRequest(Request):
        def current_user(self):
            raise RuntimeError("user store down")

    app = RequestMiddleware(posts_handler)

    with pytest.raises(RuntimeError) as excinfo:
        app(BrokenUserRequest("GET", "/posts/1/boom", "PostsController", "boom"))

    assert str(excinfo.value) == "boom"
    (event,) = events
    assert "user" not in event
    assert event["transaction"] == "PostsController#boom"


def test_facade(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    def handler(environ):
        raise RuntimeError("boom")

    app = RequestMiddleware(handler, facade=WsgiRequest)
    environ = {
        "REQUEST_METHOD": "DELETE",
        "PATH_INFO": "/posts/3",
        "HTTP_HOST": "example.com",
        "crumbtrail.route": ("PostsController", "destroy"),
    }

    with pytest.raises(RuntimeError):
        app(environ)

    (event,) = events
    assert event["transaction"] == "PostsController#destroy"
    assert event["contexts"]["request"]["url"] == "http://example.com/posts/3"


def test_injected_client():
    transport = TestTransport()
    client = crumbtrail.Client(transport=transport, release="injected")

    with pytest.raises(RuntimeError):
        RequestMiddleware(posts_handler, client=client)(Request("GET", "/x/boom"))

    (event,) = transport.events
    assert event["release"] == "injected"
    assert crumbtrail.get_client() is None


def test_disabled_environment_sends_nothing(crumbtrail_init, capture_events):
    crumbtrail_init(environment="development", enabled_environments=["production"])
    events = capture_events()

    with pytest.raises(RuntimeError):
        RequestMiddleware(posts_handler)(Request("GET", "/posts/1/boom"))

    assert events == []


def test_traces(crumbtrail_init, capture_events):
    crumbtrail_init(traces_sample_rate=1.0)
    events = capture_events()
    app = RequestMiddleware(posts_handler)

    app(Request("GET", "/posts/1", "PostsController", "show"))
    with pytest.raises(RuntimeError):
        app(Request("GET", "/posts/1/boom", "PostsController", "boom"))

    ok_transaction, error_event, error_transaction = events

    assert ok_transaction["type"] == "transaction"
    assert ok_transaction["transaction"] == "PostsController#show"
    assert ok_transaction["transaction_info"] == {"source": "view"}
    assert ok_transaction["contexts"]["trace"]["status"] == "ok"
    assert ok_transaction["tags"]["http.status_code"] == "200"
    assert ok_transaction["start_timestamp"] <= ok_transaction["timestamp"]

    assert "type" not in error_event
    trace = error_event["contexts"]["trace"]
    assert trace["trace_id"] == error_transaction["contexts"]["trace"]["trace_id"]

    assert error_transaction["contexts"]["trace"]["status"] == "internal_error"
    assert error_transaction["tags"]["http.status_code"] == "500"


def test_async_handler(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    app = RequestMiddleware(async_posts_handler)

    async def main():
        response = await app.handle_async(Request("GET", "/posts/1"))
        with pytest.raises(RuntimeError):
            await app.handle_async(
                Request("GET", "/posts/1/boom", "PostsController", "boom")
            )
        return response

    response = asyncio.run(main())

    assert response.status_code == 200
    (event,) = events
    assert event["transaction"] == "PostsController#boom"
    assert messages(event) == [
        "Started GET /posts/1/boom",
        "Loading post",
        "Failed with RuntimeError",
    ]


def test_async_requests_are_isolated(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    async def handler(request):
        crumbtrail.add_breadcrumb(message="step 1 of %s" % request.path)
        await asyncio.sleep(0.01)
        crumbtrail.add_breadcrumb(message="step 2 of %s" % request.path)
        if request.path.endswith("/boom"):
            raise RuntimeError(request.path)
        return Response(200)

    app = RequestMiddleware(handler)

    async def main():
        return await asyncio.gather(
            *(
                app.handle_async(Request("GET", path))
                for path in ("/a", "/b/boom", "/c", "/d/boom")
            ),
            return_exceptions=True,
        )

    results = asyncio.run(main())

    assert [type(r) for r in results] == [Response, RuntimeError, Response, RuntimeError]
    assert sorted(e["exception"]["value"] for e in events) == ["/b/boom", "/d/boom"]
    for event in events:
        path = event["exception"]["value"]
        assert messages(event) == [
            "Started GET %s" % path,
            "step 1 of %s" % path,
            "step 2 of %s" % path,
            "Failed with RuntimeError",
        ]


def test_threaded_requests_are_isolated(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    barrier = threading.Barrier(6)

    def handler(request):
        crumbtrail.add_breadcrumb(message="before %s" % request.path)
        barrier.wait()
        crumbtrail.add_breadcrumb(message="after %s" % request.path)
        if request.path.endswith("/boom"):
            raise RuntimeError(request.path)
        return Response(200)

    app = RequestMiddleware(handler)

    def run(path):
        try:
            app(Request("GET", path))
        except RuntimeError:
            pass

    paths = ["/%s" % i if i % 2 else "/%s/boom" % i for i in range(6)]
    threads = [threading.Thread(target=run, args=(path,)) for path in paths]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(events) == 3
    for event in events:
        path = event["exception"]["value"]
        assert event["transaction"] == path
        assert messages(event) == [
            "Started GET %s" % path,
            "before %s" % path,
            "after %s" % path,
            "Failed with RuntimeError",
        ]


@pytest.mark.parametrize(
    "response,status",
    [
        (Response(201), 201),
        (type("R", (), {"status": "404 NOT FOUND"})(), 404),
        (type("R", (), {"status": 302})(), 302),
        (("500 Internal Server Error", "body"), 500),
        ((418, "teapot"), 418),
        ("plain body", None),
        (None, None),
    ],
)
def test_get_response_status(response, status):
    assert get_response_status(response) == status


SAME_ERROR = RuntimeError("raised by every request")


def test_same_error_in_later_request_is_reported(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    def handler(request):
        raise SAME_ERROR

    app = RequestMiddleware(handler)

    for path in ("/first", "/second"):
        with pytest.raises(RuntimeError):
            app(Request("GET", path))

    assert [e["transaction"] for e in events] == ["/first", "/second"]


def test_event_id_is_stored_on_request(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    request = Request("GET", "/posts/1/boom")

    with pytest.raises(RuntimeError):
        RequestMiddleware(posts_handler)(request)

    (event,) = events
    assert request.crumbtrail_event_id == event["event_id"]


def test_event_id_is_stored_on_request_async(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    request = Request("GET", "/posts/1/boom")
    app = RequestMiddleware(async_posts_handler)

    with pytest.raises(RuntimeError):
        asyncio.run(app.handle_async(request))

    (event,) = events
    assert request.crumbtrail_event_id == event["event_id"]


def test_event_id_is_stored_in_environ(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    def handler(environ):
        raise RuntimeError("boom")

    environ = {"REQUEST_METHOD": "GET", "PATH_INFO": "/", "HTTP_HOST": "example.com"}

    with pytest.raises(RuntimeError):
        RequestMiddleware(handler, facade=WsgiRequest)(environ)

    (event,) = events
    assert environ["crumbtrail.event_id"] == event["event_id"]


def test_event_id_on_request_without_attributes(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    class SlottedRequest:
        __slots__ = ()

    def handler(request):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError) as excinfo:
        RequestMiddleware(handler)(SlottedRequest())

    assert str(excinfo.value) == "boom"
    assert len(events) == 1


def test_no_event_id_when_nothing_was_sent(crumbtrail_init):
    crumbtrail_init(environment="development", enabled_environments=["production"])
    request = Request("GET", "/posts/1/boom")

    with pytest.raises(RuntimeError):
        RequestMiddleware(posts_handler)(request)

    assert not hasattr(request, "crumbtrail_event_id")


def test_user_attributes(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    def user_attributes(request):
        return {"plan": "gold", "api_key": "k-123", "path": request.path}

    app = RequestMiddleware(posts_handler, user_attributes=user_attributes)

    with pytest.raises(RuntimeError):
        app(Request("GET", "/posts/1/boom", user={"id": 7, "login": "erin"}))

    (event,) = events
    assert event["user"] == {
        "id": 7,
        "username": "erin",
        "plan": "gold",
        "api_key": "[FILTERED]",
        "path": "/posts/1/boom",
    }


@pytest.mark.tests_internal_exceptions
def test_broken_user_attributes_keep_the_user(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    def user_attributes(request):
        raise LookupError("billing is down")

    app = RequestMiddleware(posts_handler, user_attributes=user_attributes)

    with pytest.raises(RuntimeError):
        app(Request("GET", "/posts/1/boom", user={"id": 7, "login": "erin"}))

    (event,) = events
    assert event["user"] == {"id": 7, "username": "erin"}

import pytest
from werkzeug.test import Client, EnvironBuilder

import crumbtrail
from crumbtrail import WsgiMiddleware
from crumbtrail.integrations.dispatch import record_dispatch
from crumbtrail.scope import get_active_scope


@pytest.fixture
def environs():
    return []


@pytest.fixture
def posts_app(environs):
    def app(environ, start_response):
        environs.append(environ)
        crumbtrail.add_breadcrumb(message="Loading post", category="db")
        if environ["PATH_INFO"].endswith("/boom"):
            environ["crumbtrail.route"] = ("PostsController", "boom")
            raise RuntimeError("boom")
        start_response("200 OK", [("Content-Type", "text/plain")])
        return [b"post"]

    return app


class IterableApp:
    def __init__(self, iterable):
        self.iterable = iterable

    def __call__(self, environ, start_response):
        start_response("200 OK", [])
        return self.iterable


class FailingIterable:
    def __init__(self, exc_func):
        self._exc_func = exc_func
        self.closed = False

    def __iter__(self):
        yield b"first chunk"
        crumbtrail.add_breadcrumb(message="Rendering second chunk")
        raise self._exc_func()

    def close(self):
        self.closed = True


def messages(event):
    return [c["message"] for c in event["breadcrumbs"]["values"]]


def test_not_initialized(posts_app):
    client = Client(WsgiMiddleware(posts_app))

    response = client.get("/posts/1", buffered=True)

    assert response.status_code == 200
    assert response.get_data() == b"post"


def test_success(crumbtrail_init, capture_events, posts_app):
    crumbtrail_init()
    events = capture_events()
    client = Client(WsgiMiddleware(posts_app))

    response = client.get("/posts/1", buffered=True)

    assert response.status_code == 200
    assert response.get_data() == b"post"
    assert events == []
    assert get_active_scope() is None


def test_boom(crumbtrail_init, capture_events, posts_app, environs):
    crumbtrail_init()
    events = capture_events()
    client = Client(WsgiMiddleware(posts_app))

    with pytest.raises(RuntimeError) as excinfo:
        client.get(
            "/posts/1/boom?id=1&password=x",
            headers={"Authorization": "Bearer secret", "X-Request-Id": "req-7"},
        )

    assert str(excinfo.value) == "boom"

    (event,) = events
    assert event["exception"]["type"] == "RuntimeError"
    assert event["exception"]["value"] == "boom"
    assert event["transaction"] == "PostsController#boom"

    request = event["contexts"]["request"]
    assert request["url"] == "http://localhost/posts/1/boom"
    assert request["method"] == "GET"
    assert request["query_string"] == "id=1&password=[FILTERED]"
    assert request["headers"]["Authorization"] == "[FILTERED]"
    assert event["contexts"]["params"] == {"id": "1", "password": "[FILTERED]"}
    assert event["tags"]["request_id"] == "req-7"

    assert messages(event) == [
        "Started GET /posts/1/boom",
        "Loading post",
        "Failed with RuntimeError",
    ]
    assert event["breadcrumbs"]["values"][-1]["category"] == "http.request"

    (environ,) = environs
    assert environ["crumbtrail.event_id"] == event["event_id"]


@pytest.mark.parametrize(
    "script_name,path_info,url",
    [
        ("", "/posts/1/boom", "http://localhost/posts/1/boom"),
        ("/blog/", "/posts/1/boom", "http://localhost/blog/posts/1/boom"),
    ],
)
def test_url(crumbtrail_init, capture_events, posts_app, script_name, path_info, url):
    crumbtrail_init()
    events = capture_events()
    app = WsgiMiddleware(posts_app)

    environ = EnvironBuilder(
        path=path_info, base_url="http://localhost" + script_name
    ).get_environ()

    with pytest.raises(RuntimeError):
        app(environ, lambda status, headers, exc_info=None: None)

    (event,) = events
    assert event["contexts"]["request"]["url"] == url


def test_error_while_iterating(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    iterable = FailingIterable(lambda: ValueError("broken template"))
    app = WsgiMiddleware(IterableApp(iterable))

    environ = EnvironBuilder(path="/reports/9").get_environ()
    response = app(environ, lambda status, headers, exc_info=None: None)

    chunks = []
    with pytest.raises(ValueError):
        for chunk in response:
            chunks.append(chunk)

    assert chunks == [b"first chunk"]
    (event,) = events
    assert event["exception"]["value"] == "broken template"
    assert event["transaction"] == "/reports/9"
    assert messages(event) == [
        "Started GET /reports/9",
        "Rendering second chunk",
        "Failed with ValueError",
    ]
    assert environ["crumbtrail.event_id"] == event["event_id"]

    response.close()
    assert iterable.closed
    assert get_active_scope() is None


@pytest.mark.parametrize("exc_func", [KeyboardInterrupt, SystemExit])
def test_base_exception_while_iterating(crumbtrail_init, capture_events, exc_func):
    crumbtrail_init()
    events = capture_events()
    app = WsgiMiddleware(IterableApp(FailingIterable(exc_func)))

    environ = EnvironBuilder(path="/").get_environ()
    response = app(environ, lambda status, headers, exc_info=None: None)

    with pytest.raises(exc_func):
        list(response)

    assert events == []


def test_nested_middleware_captures_once(crumbtrail_init, capture_events, posts_app):
    crumbtrail_init()
    events = capture_events()
    client = Client(WsgiMiddleware(WsgiMiddleware(posts_app)))

    with pytest.raises(RuntimeError):
        client.get("/posts/1/boom")

    assert len(events) == 1

    response = client.get("/posts/1", buffered=True)
    assert response.status_code == 200


def test_dispatch_inside_wsgi_app(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    def app(environ, start_response):
        with record_dispatch("CommentsController", "create", params={"body": "hi"}):
            raise LookupError("post not found")

    client = Client(WsgiMiddleware(app))

    with pytest.raises(LookupError):
        client.post("/posts/1/comments")

    (event,) = events
    assert event["transaction"] == "CommentsController#create"
    assert messages(event) == [
        "Started POST /posts/1/comments",
        "Processing CommentsController#create",
        "Failed CommentsController#create: LookupError",
        "Failed with LookupError",
    ]


def test_traces(crumbtrail_init, capture_events, posts_app):
    crumbtrail_init(traces_sample_rate=1.0)
    events = capture_events()
    client = Client(WsgiMiddleware(posts_app))

    client.get("/posts/1", buffered=True)

    (transaction,) = events
    assert transaction["type"] == "transaction"
    assert transaction["transaction"] == "/posts/1"
    assert transaction["transaction_info"] == {"source": "url"}
    assert transaction["contexts"]["trace"]["status"] == "ok"
    assert transaction["tags"]["http.status_code"] == "200"


def test_session_and_user_from_environ(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    class User:
        id = 12
        email = "dana@example.com"

    def app(environ, start_response):
        raise RuntimeError("boom")

    def login(environ, start_response):
        environ["crumbtrail.user"] = User()
        environ["beaker.session"] = {"cart": [3], "csrf_token": "abc"}
        return WsgiMiddleware(app)(environ, start_response)

    client = Client(login)

    with pytest.raises(RuntimeError):
        client.get("/checkout")

    (event,) = events
    assert event["user"] == {"id": 12, "email": "dana@example.com"}
    assert event["contexts"]["session"] == {"cart": [3], "csrf_token": "[FILTERED]"}


def test_same_error_in_later_request_is_reported(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()
    error = RuntimeError("raised by every request")

    def app(environ, start_response):
        raise error

    client = Client(WsgiMiddleware(app))

    for path in ("/first", "/second"):
        with pytest.raises(RuntimeError):
            client.get(path)

    assert [e["transaction"] for e in events] == ["/first", "/second"]


def test_user_attributes(crumbtrail_init, capture_events):
    crumbtrail_init()
    events = capture_events()

    def app(environ, start_response):
        raise RuntimeError("boom")

    def login(environ, start_response):
        environ["crumbtrail.user"] = {"id": 3}
        middleware = WsgiMiddleware(
            app,
            user_attributes=lambda request: {
                "tenant": request.environ["HTTP_X_TENANT"],
                "session_token": "s3cr3t",
            },
        )
        return middleware(environ, start_response)

    client = Client(login)

    with pytest.raises(RuntimeError):
        client.get("/", headers={"X-Tenant": "acme"})

    (event,) = events
    assert event["user"] == {"id": 3, "tenant": "acme", "session_token": "[FILTERED]"}

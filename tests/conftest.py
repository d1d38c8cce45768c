import threading
import time
from dataclasses import replace

import pytest
from requests.structures import CaseInsensitiveDict

import site_mirror as sm


class FakeResponse:
    def __init__(
        self, body=b"", status=200, content_type="text/html; charset=utf-8", headers=None
    ):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.content = body
        self.status_code = status
        self.headers = CaseInsensitiveDict(headers or {})
        if content_type is not None:
            self.headers.setdefault("Content-Type", content_type)
        self.encoding = None
        self.apparent_encoding = "utf-8"
        self.closed = False

    @property
    def text(self):
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    def close(self):
        self.closed = True


class FakeSession:
    """Stands in for requests.Session: routes map URL -> response,
    exception instance, or a callable producing either."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.headers = {"User-Agent": "test-agent"}
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, timeout=None, stream=False):
        with self._lock:
            self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse("not found", status=404, content_type="text/plain")
        if callable(route):
            route = route(url)
        if isinstance(route, BaseException):
            raise route
        return route


def html_page(body, head=""):
    return FakeResponse(f"<html><head>{head}</head><body>{body}</body></html>")


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def config():
    return sm.Configuration(
        max_depth=1,
        concurrency=3,
        request_delay=0.0,
        request_timeout=5.0,
        resource_types=frozenset(sm.ResourceType),
    )


@pytest.fixture
def events():
    bus = sm.EventBus()
    seen = []
    bus.subscribe(seen.append)
    bus.seen = seen
    return bus


@pytest.fixture
def crawl(config, events):
    def run(seed, routes, **overrides):
        cfg = replace(config, **overrides) if overrides else config
        session = FakeSession(routes)
        job = sm.CrawlJob.create(seed, cfg)
        scheduler = sm.CrawlScheduler(job, session, events)
        scheduler.run()
        return job, session

    return run

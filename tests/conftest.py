"""
Fakes for the Playwright page and the aiohttp session.
No browser and no network are touched by the test suite.
"""

import json
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from applicant import Applicant


class FakeLocator:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    @property
    def first(self):
        return self

    async def wait_for(self, state="visible", timeout=None):
        if self.selector in self.page.missing:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {self.selector}")
        self.page.events.append(("wait_for", self.selector))

    async def screenshot(self, path):
        Path(path).write_bytes(self.page.element_png)
        self.page.events.append(("element_screenshot", Path(path).name))

    async def fill(self, value):
        self.page.typed[self.selector] = value

    async def press_sequentially(self, text, delay=None):
        self.page.typed[self.selector] = self.page.typed.get(self.selector, "") + text
        self.page.events.append(("type", self.selector, text))


class FakePage:
    """Records every interaction in `events`, in order."""

    def __init__(self, available_href=None, fail_on=None, missing=(), element_png=b"\x89PNG-captcha"):
        self.available_href = available_href
        self.fail_on = fail_on or {}
        self.missing = set(missing)
        self.element_png = element_png
        self.events = []
        self.typed = {}
        self.routes = []
        self.html = "<html><body>RK-Termin</body></html>"

    def _maybe_fail(self, name):
        exc = self.fail_on.get(name)
        if exc is not None:
            raise exc

    async def goto(self, url, wait_until=None, timeout=None):
        self.events.append(("goto", url))
        self._maybe_fail("goto")

    async def screenshot(self, path):
        self._maybe_fail("screenshot")
        Path(path).write_bytes(b"\x89PNG-page")
        self.events.append(("screenshot", Path(path).name))

    async def content(self):
        self._maybe_fail("content")
        self.events.append(("content",))
        return self.html

    async def evaluate(self, script, arg=None):
        self.events.append(("evaluate", arg))
        self._maybe_fail("evaluate")
        return self.available_href

    async def click(self, selector):
        self.events.append(("click", selector))
        self._maybe_fail("click")

    @asynccontextmanager
    async def expect_navigation(self, wait_until=None, timeout=None):
        yield
        self.events.append(("navigated", wait_until))

    def locator(self, selector):
        return FakeLocator(self, selector)

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))


class FakeSolver:
    """Stands in for CaptchaSolver; returns the queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def solve(self, page):
        self.calls += 1
        page.events.append(("captcha", self.calls))
        return self.results.pop(0)


class FakeResponse:
    """Answers with `payload`, or parses `body` like aiohttp's json(content_type=None)."""

    def __init__(self, payload=None, body=None):
        self.payload = payload
        self.body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def raise_for_status(self):
        pass

    async def json(self, content_type=None):
        if self.body is not None:
            return json.loads(self.body)
        return self.payload


class FakeSession:
    """
    Queue payloads per API method name, e.g.
    FakeSession(createTask=[{...}], getTaskResult=[{...}, {...}]).
    An Exception instance in a queue is raised instead of answering;
    a FakeResponse instance is returned as-is.
    """

    def __init__(self, **queues):
        self.queues = {name: list(items) for name, items in queues.items()}
        self.requests = []
        self.closed = False

    def post(self, url, json=None, timeout=None):
        method = url.rsplit("/", 1)[-1]
        self.requests.append((method, json))
        item = self.queues[method].pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, FakeResponse):
            return item
        return FakeResponse(item)

    async def close(self):
        self.closed = True


@pytest.fixture
def applicant():
    return Applicant(
        lastname="Doe",
        firstname="Jane",
        email="j@example.com",
        passport_number="X123",
        province="Foo",
        country="Bar",
    )


@pytest.fixture
def make_page():
    """Factory for FakePage; call with the same arguments as FakePage."""
    return FakePage


@pytest.fixture
def make_solver():
    return FakeSolver


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def make_response():
    return FakeResponse

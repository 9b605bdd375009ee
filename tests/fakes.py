"""Playwright stand-ins for driving the extraction engine and scraper."""
from contextlib import contextmanager
from typing import Dict, List, Optional, Union

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError


class FakeElement:
    """Stand-in for a Playwright ElementHandle."""

    def __init__(
        self,
        text: Optional[str] = None,
        html: str = "",
        attrs: Optional[Dict[str, str]] = None,
        children: Optional[Dict[str, List["FakeElement"]]] = None,
        broken: bool = False,
    ):
        self.text = text
        self.html = html
        self.attrs = attrs or {}
        self.children = children or {}
        self.broken = broken

    def query_selector(self, selector):
        if self.broken:
            raise RuntimeError("element detached")
        matches = self.children.get(selector, [])
        return matches[0] if matches else None

    def query_selector_all(self, selector):
        return list(self.children.get(selector, []))

    def text_content(self):
        return self.text

    def inner_html(self):
        return self.html

    def get_attribute(self, name):
        return self.attrs.get(name)


def item(**fields) -> FakeElement:
    """Item container whose children are keyed by selector."""
    return FakeElement(
        children={
            selector: [value if isinstance(value, FakeElement) else FakeElement(text=value)]
            for selector, value in fields.items()
        }
    )


def listing(*items: FakeElement, container: str = ".item", extra=None) -> FakeElement:
    children = {container: list(items)}
    children.update(extra or {})
    return FakeElement(children=children)


def products(count: int, prefix: str = "Item") -> FakeElement:
    return listing(*[item(h2=f"{prefix} {i}", **{".price": f"${i}.50"}) for i in range(1, count + 1)])


class FakePage:
    """Stand-in for a Playwright Page serving documents from a FakeSite."""

    def __init__(self, site: "FakeSite"):
        self.site = site
        self.document: Optional[FakeElement] = None
        self.visited: List[str] = []
        self.scrolled = 0
        self.routes = []
        self.closed = False

    def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        self.site.visits.append(url)
        target = self.site.documents.get(url, self.site.default)
        if isinstance(target, Exception):
            raise target
        self.document = target
        return None

    def wait_for_selector(self, selector, timeout=None):
        if not self.document or not self.document.children.get(selector):
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    def evaluate(self, script):
        self.scrolled += 1

    def route(self, pattern, handler):
        self.routes.append((pattern, handler))

    def query_selector(self, selector):
        return self.document.query_selector(selector)

    def query_selector_all(self, selector):
        return self.document.query_selector_all(selector)

    def close(self):
        self.closed = True


class FakeSite:
    """URL -> document (or exception) map plus a browser-like page provider."""

    def __init__(self, documents: Optional[Dict[str, Union[FakeElement, Exception]]] = None):
        self.documents = dict(documents or {})
        self.default = FakeElement()
        self.visits: List[str] = []
        self.pages: List[FakePage] = []
        self.blocked: List[tuple] = []

    @contextmanager
    def page(self, block_resource_types=()):
        page = FakePage(self)
        self.pages.append(page)
        self.blocked.append(tuple(block_resource_types))
        try:
            yield page
        finally:
            page.close()


def timeout_error(message: str = "Timeout 90000ms exceeded") -> PlaywrightTimeoutError:
    return PlaywrightTimeoutError(message)

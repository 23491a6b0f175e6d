"""Shared fixtures: fake Playwright objects and an in-memory database."""

import io
from typing import Dict, List, Optional, Union
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from PIL import Image
from playwright.async_api import Error as PlaywrightError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pagewatch.db.models import Base, MonitorTarget
from pagewatch.db.repository import MonitorRepository
from pagewatch.ingest.session_pool import SessionPool
from pagewatch.notify.dispatcher import NotificationDispatcher
from pagewatch.storage.screenshots import ScreenshotStore
from pagewatch.worker.pipeline import CheckPipeline


def make_png(width: int = 8, height: int = 8, color=(255, 0, 0), changed: Optional[Dict] = None) -> bytes:
    """Solid-color PNG with optional {(x, y): (r, g, b)} overrides."""
    img = Image.new("RGB", (width, height), color)
    for (x, y), pixel in (changed or {}).items():
        img.putpixel((x, y), pixel)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeSite:
    """
    What every fake page serves.

    ``elements`` maps a selector to its text. A list value is consumed one
    entry per lookup (the last entry sticks), and None means "no match".
    A context refuses new pages once it has opened ``pages_per_context``.
    """

    def __init__(self):
        self.body_text = ""
        self.html = "<html><body></body></html>"
        self.elements: Dict[str, Union[str, None, List[Optional[str]]]] = {}
        self.screenshot = make_png()
        self.goto_error: Optional[Exception] = None
        self.pages_per_context: Optional[int] = None
        self.queries: List[str] = []
        self.visits: List[str] = []

    def lookup(self, selector: str) -> Optional[str]:
        self.queries.append(selector)
        value = self.elements.get(selector)
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value


class FakeElement:
    def __init__(self, text: str):
        self._text = text

    async def inner_text(self) -> str:
        return self._text


class FakeLocator:
    """Matches nothing, so consent dismissal is a no-op."""

    first = None

    async def count(self) -> int:
        return 0


class FakePage:
    def __init__(self, site: FakeSite):
        self.site = site
        self.closed = False

    async def goto(self, url, wait_until=None, timeout=None):
        self.site.visits.append(url)
        if self.site.goto_error is not None:
            raise self.site.goto_error

    async def wait_for_timeout(self, ms):
        return None

    def locator(self, selector):
        return FakeLocator()

    async def query_selector(self, selector):
        text = self.site.lookup(selector)
        return FakeElement(text) if text is not None else None

    async def query_selector_all(self, selector):
        text = self.site.lookup(selector)
        return [FakeElement(text)] if text is not None else []

    async def inner_text(self, selector):
        return self.site.body_text

    async def content(self):
        return self.site.html

    async def screenshot(self, full_page=False, type="png"):
        return self.site.screenshot

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, site: FakeSite, options: dict):
        self.site = site
        self.options = options
        self.closed = False
        self.alive = True
        self.init_scripts: List[str] = []
        self.pages: List[FakePage] = []

    async def cookies(self):
        if not self.alive:
            raise RuntimeError("Target closed")
        return []

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def new_page(self):
        limit = self.site.pages_per_context
        if limit is not None and len(self.pages) >= limit:
            raise PlaywrightError("Target page, context or browser has been closed")
        page = FakePage(self.site)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, site: FakeSite):
        self.site = site
        self.connected = True
        self.closed = False
        self.contexts: List[FakeContext] = []

    def is_connected(self):
        return self.connected

    async def new_context(self, **options):
        context = FakeContext(self.site, options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True
        self.connected = False


class FakeLauncher:
    def __init__(self, site: Optional[FakeSite] = None, fail: bool = False):
        self.site = site or FakeSite()
        self.fail = fail
        self.browsers: List[FakeBrowser] = []
        self.stopped = False

    @property
    def launches(self) -> int:
        return len(self.browsers)

    async def launch(self):
        if self.fail:
            raise RuntimeError("Executable doesn't exist")
        browser = FakeBrowser(self.site)
        self.browsers.append(browser)
        return browser

    async def stop(self):
        self.stopped = True


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def launcher(site):
    return FakeLauncher(site)


@pytest.fixture
def pool(launcher):
    return SessionPool(
        max_sessions=2,
        max_interactive=1,
        error_threshold=3,
        acquire_timeout=1.0,
        probe_timeout=0.5,
        launcher=launcher,
    )


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def repository(session_factory):
    return MonitorRepository(session_factory)


@pytest.fixture
def make_target(session_factory):
    """Insert a monitor and return it detached."""

    async def _make(**fields) -> MonitorTarget:
        values = {
            "name": "Example",
            "url": "https://example.com/product",
            "mode": "text",
            "interval": "30m",
            "retry_count": 1,
            "retry_delay_seconds": 0,
        }
        values.update(fields)
        async with session_factory() as db:
            target = MonitorTarget(**values)
            db.add(target)
            await db.commit()
            await db.refresh(target)
            return target

    return _make


@pytest.fixture
def store(tmp_path):
    return ScreenshotStore(base_path=str(tmp_path / "screenshots"))


@pytest.fixture
def dispatcher():
    mock = AsyncMock(spec=NotificationDispatcher)
    mock.notify.return_value = True
    return mock


@pytest.fixture
def pipeline(pool, repository, store, dispatcher):
    return CheckPipeline(
        pool=pool,
        repository=repository,
        store=store,
        dispatcher=dispatcher,
        navigation_timeout=1.0,
        settle_ms=0,
    )

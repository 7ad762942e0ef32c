"""
Shared fixtures for the pressflow test suite.

Provides mock data, temp data directories, fake capability handlers and
reusable mock HTTP objects so that all tests run WITHOUT any external
services.
"""

import io
import json
from unittest.mock import AsyncMock

import pytest
from PIL import Image

from pressflow import config as pf_config
from pressflow.config import Campaign, Settings, SourceItem
from pressflow.providers import Capability, CapabilityHandler, HandlerResponse


# ---------------------------------------------------------------------------
# Settings / data directory
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point every data file at tmp_path and reset module singletons."""
    settings = Settings(
        data_dir=tmp_path / "data",
        site_registry_path=tmp_path / "site-registry.json",
        image_proxy_url="https://proxy.test/fetch",
    )
    monkeypatch.setattr(pf_config, "_settings", settings)
    for module_name, attr in [
        ("pressflow.dedup", "_ledger"),
        ("pressflow.translation", "_history"),
        ("pressflow.orchestrator", "_orchestrator"),
        ("pressflow.wordpress_client", "_registry"),
    ]:
        monkeypatch.setattr(f"{module_name}.{attr}", None, raising=False)
    return settings


# ---------------------------------------------------------------------------
# Site registry fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def site_registry():
    """Return test site registry data."""
    return {
        "sites": [
            {
                "id": "testsite1",
                "domain": "testsite1.com",
                "name": "Test Site One",
                "wp_user": "testuser",
                "wp_app_password_env": "WP_TEST1_PASSWORD",
                "default_author_id": 1,
            },
            {
                "id": "testsite2",
                "domain": "testsite2.com",
                "name": "Test Site Dos",
                "language": "es",
                "wp_user": "testuser",
                "wp_app_password_env": "WP_TEST2_PASSWORD",
            },
        ],
    }


@pytest.fixture
def site_registry_file(tmp_path, site_registry):
    """Write site registry to a temp JSON file and return its path."""
    path = tmp_path / "site-registry.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(site_registry, f)
    return path


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


# ---------------------------------------------------------------------------
# WordPress API response fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def wp_post_response():
    """Sample WordPress REST API post response."""
    return {
        "id": 42,
        "date": "2026-02-14T10:00:00",
        "slug": "test-post",
        "status": "publish",
        "type": "post",
        "link": "https://testsite1.com/test-post/",
        "title": {"rendered": "Test Post Title"},
        "content": {"rendered": "<p>Test content</p>"},
        "excerpt": {"rendered": "<p>Test excerpt</p>"},
        "author": 1,
        "featured_media": 0,
        "categories": [1],
        "tags": [],
    }


@pytest.fixture
def wp_media_response():
    """Sample WordPress REST API media response."""
    return {
        "id": 100,
        "slug": "test-image",
        "type": "attachment",
        "source_url": "https://testsite1.com/wp-content/uploads/2026/02/test-image.png",
        "media_type": "image",
        "mime_type": "image/png",
    }


# ---------------------------------------------------------------------------
# Image fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def png_bytes():
    """A real 8x8 PNG."""
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def jpeg_bytes():
    """A real 8x8 JPEG."""
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (30, 30, 200)).save(buf, format="JPEG")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Campaign fixtures
# ---------------------------------------------------------------------------

def make_campaign(**overrides):
    """Build a Campaign with every optional stage off unless overridden."""
    defaults = {
        "campaign_id": "camp-1",
        "name": "Test Campaign",
        "site_id": "testsite1",
        "niche": "personal finance",
        "enable_research": False,
        "enable_images": False,
        "enable_linking": False,
        "enable_schema": False,
        "enable_rewrite": False,
        "enable_quality_gate": False,
    }
    defaults.update(overrides)
    return Campaign(**defaults)


@pytest.fixture
def campaign():
    return make_campaign()


@pytest.fixture
def source_item():
    return SourceItem(topic="Top 10 Budget Tips!")


# ---------------------------------------------------------------------------
# Fake capability handlers
# ---------------------------------------------------------------------------

class FakeHandler(CapabilityHandler):
    """Scripted handler: returns canned text/data or raises, recording calls."""

    def __init__(self, handler_id, capabilities, text="", data=None, error=None, priority=0, available=True):
        self.handler_id = handler_id
        self.capabilities = frozenset(Capability(c) for c in capabilities)
        self.priority = priority
        self.text = text
        self.data = data
        self.error = error
        self.available = available
        self.calls = []

    def is_available(self):
        return self.available

    async def execute(self, capability, request):
        self.calls.append((capability, request))
        if self.error is not None:
            raise self.error
        text = self.text(request) if callable(self.text) else self.text
        data = self.data(request) if callable(self.data) else self.data
        return HandlerResponse(text=text, data=data)


@pytest.fixture
def fake_handler():
    """Factory for FakeHandler instances."""
    return FakeHandler


ARTICLE_HTML = """<h2>Why Budgeting Matters</h2>
<p>In 2024 I tested every budgeting method I could find over six months of personal experience.
According to the <a href="https://www.federalreserve.gov/data">Federal Reserve</a>, 37% of adults
could not cover a $400 emergency. Research shows that written budgets reduce overspending.</p>
<h2>Track Every Expense</h2>
<p>Start by logging what you spend for 30 days. In my experience the small purchases add up fastest.</p>
<h2>Automate Your Savings</h2>
<p>Set up an automatic transfer on payday so saving happens before spending does.</p>
<h2>Frequently Asked Questions</h2>
<h3>How much should I save each month?</h3>
<p>Most planners suggest 20% of take-home pay, but any consistent amount helps.</p>
<h3>Do budgeting apps work?</h3>
<p>They work when you review them weekly.</p>
<h2>Conclusion</h2>
<p>Budgeting is a habit. Start small, review weekly and adjust as you learn.</p>"""


@pytest.fixture
def article_html():
    return ARTICLE_HTML


@pytest.fixture
def campaign_factory():
    """Factory for Campaigns with optional stages off unless overridden."""
    return make_campaign

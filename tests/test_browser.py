"""Tests for the requests-based browser session provider."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest
import requests

from pricewatch.browser.session import HttpBrowser
from pricewatch.errors import BrowserError, SessionNotFoundError

HTML = "<html><head><title> Galaxy S23 </title></head><body><h1>Galaxy S23</h1></body></html>"


def response(status=200, text=HTML, url="https://shop-a.de/p/1"):
    mock = MagicMock()
    mock.status_code = status
    mock.text = text
    mock.url = url
    if status >= 400:
        mock.raise_for_status.side_effect = requests.HTTPError(f"{status} Error", response=mock)
    return mock


@pytest.fixture
def browser(settings):
    return HttpBrowser(settings)


class TestHttpBrowser:
    def test_navigate_and_read(self, browser):
        async def scenario():
            session_id = await browser.create_session()
            with patch("requests.Session.get", return_value=response()) as get:
                await browser.navigate(session_id, "https://shop-a.de/p/1")
            info = await browser.get_page_info(session_id)
            heading = await browser.evaluate(session_id, lambda soup, tag: soup.find(tag).get_text(), "h1")
            html = await browser.get_html(session_id)
            await browser.close_session(session_id)
            return get, info, heading, html

        get, info, heading, html = asyncio.run(scenario())

        assert get.call_args.kwargs["timeout"] == browser.settings.REQUEST_TIMEOUT
        assert info == {"url": "https://shop-a.de/p/1", "title": "Galaxy S23", "status_code": 200}
        assert heading == "Galaxy S23"
        assert html == HTML

    def test_http_error_carries_status(self, browser):
        async def scenario():
            session_id = await browser.create_session()
            with patch("requests.Session.get", return_value=response(status=404)):
                await browser.navigate(session_id, "https://shop-a.de/p/gone")

        with pytest.raises(BrowserError) as excinfo:
            asyncio.run(scenario())
        assert excinfo.value.status_code == 404

    def test_connection_error_has_no_status(self, browser):
        async def scenario():
            session_id = await browser.create_session()
            with patch("requests.Session.get", side_effect=requests.ConnectionError("refused")):
                await browser.navigate(session_id, "https://shop-a.de/p/1")

        with pytest.raises(BrowserError) as excinfo:
            asyncio.run(scenario())
        assert excinfo.value.status_code is None

    def test_unknown_session(self, browser):
        with pytest.raises(SessionNotFoundError):
            asyncio.run(browser.get_html("missing"))

    def test_closed_session_is_gone(self, browser):
        async def scenario():
            session_id = await browser.create_session()
            await browser.close_session(session_id)
            await browser.get_html(session_id)

        with pytest.raises(SessionNotFoundError):
            asyncio.run(scenario())

    def test_user_agent_from_config(self, browser):
        async def scenario():
            session_id = await browser.create_session({"user_agent": "pricewatch-test"})
            return browser._session(session_id).http.headers["User-Agent"]

        assert asyncio.run(scenario()) == "pricewatch-test"

    def test_screenshot_not_supported(self, browser):
        async def scenario():
            session_id = await browser.create_session()
            await browser.screenshot(session_id)

        with pytest.raises(BrowserError):
            asyncio.run(scenario())

"""Browser session providers.

The pipeline drives pages through the small BrowserSessionProvider contract
(create, navigate, read HTML and page info, evaluate, screenshot, close). The
shipped HttpBrowser satisfies it with requests and BeautifulSoup; a rendering
driver can be plugged in by implementing the same coroutines.
"""

import abc
import asyncio
import logging
import random
import uuid
from typing import Any, Callable, Dict, Optional

import requests
from bs4 import BeautifulSoup

from config.settings import Settings, get_settings
from pricewatch.errors import BrowserError, SessionNotFoundError

logger = logging.getLogger("pricewatch.browser")


class BrowserSessionProvider(abc.ABC):
    """Contract the scraping pipeline needs from a browser."""

    @abc.abstractmethod
    async def create_session(self, config: Optional[Dict[str, Any]] = None) -> str:
        """Open a session and return its id."""

    @abc.abstractmethod
    async def navigate(self, session_id: str, url: str) -> None:
        """Load ``url`` in the session; raises BrowserError on failure."""

    @abc.abstractmethod
    async def get_html(self, session_id: str) -> str:
        pass

    @abc.abstractmethod
    async def get_page_info(self, session_id: str) -> Dict[str, Any]:
        """Return at least ``url`` and ``title`` of the loaded page."""

    @abc.abstractmethod
    async def evaluate(self, session_id: str, fn: Callable, *args) -> Any:
        pass

    @abc.abstractmethod
    async def screenshot(self, session_id: str, **options) -> bytes:
        pass

    @abc.abstractmethod
    async def close_session(self, session_id: str) -> None:
        pass


class _HttpSession:
    def __init__(self, user_agent: str, humanized: bool):
        self.http = requests.Session()
        self.http.headers.update({
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml",
            "Accept-Language": "de-DE,de;q=0.9,en-US;q=0.8,en;q=0.7",
        })
        self.humanized = humanized
        self.url: Optional[str] = None
        self.status_code: Optional[int] = None
        self.html: str = ""
        self.soup: Optional[BeautifulSoup] = None


class HttpBrowser(BrowserSessionProvider):
    """Fetches pages with requests and parses them with BeautifulSoup.

    There is no JavaScript rendering: ``evaluate`` runs a Python callable
    against the parsed document (``fn(soup, *args)``) and ``screenshot`` is not
    supported.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._sessions: Dict[str, _HttpSession] = {}

    def _session(self, session_id: str) -> _HttpSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Browser session {session_id} not found")
        return session

    async def create_session(self, config: Optional[Dict[str, Any]] = None) -> str:
        config = config or {}
        session_id = str(uuid.uuid4())
        self._sessions[session_id] = _HttpSession(
            config.get("user_agent") or self.settings.USER_AGENT,
            bool(config.get("humanized")),
        )
        logger.debug("Opened browser session %s", session_id)
        return session_id

    async def navigate(self, session_id: str, url: str) -> None:
        session = self._session(session_id)
        if session.humanized:
            # Pace requests like a person reading the previous page
            await asyncio.sleep(random.uniform(1, 3))

        logger.info("Fetching %s", url)
        try:
            response = await asyncio.to_thread(session.http.get, url, timeout=self.settings.REQUEST_TIMEOUT)
            response.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise BrowserError(f"HTTP {status} fetching {url}", status_code=status) from e
        except requests.RequestException as e:
            raise BrowserError(f"Error fetching {url}: {e}") from e

        session.url = response.url
        session.status_code = response.status_code
        session.html = response.text
        session.soup = BeautifulSoup(response.text, "lxml")

    async def get_html(self, session_id: str) -> str:
        return self._session(session_id).html

    async def get_page_info(self, session_id: str) -> Dict[str, Any]:
        session = self._session(session_id)
        title = None
        if session.soup is not None and session.soup.title is not None:
            title = session.soup.title.get_text(strip=True)
        return {"url": session.url, "title": title, "status_code": session.status_code}

    async def evaluate(self, session_id: str, fn: Callable, *args) -> Any:
        session = self._session(session_id)
        if session.soup is None:
            raise BrowserError("No page loaded in session")
        return fn(session.soup, *args)

    async def screenshot(self, session_id: str, **options) -> bytes:
        raise BrowserError("Screenshots require a rendering browser")

    async def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.http.close()
            logger.debug("Closed browser session %s", session_id)

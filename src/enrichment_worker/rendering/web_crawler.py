"""Headless website crawler for contractor profile enrichment.

Loads a contractor's homepage in Chromium, follows the most informative
same-site navigation links (services, contact, about, ...) and returns the
visible text of up to CRAWLER_MAX_PAGES pages as one document for AI
extraction.

One crawler owns one browser session. Use it as a context manager (or call
``close()``) so the browser is released on every exit path.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, TYPE_CHECKING
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from enrichment_worker.constants import (
    CRAWLER_MAX_CONTENT_LENGTH,
    CRAWLER_MAX_PAGES,
    CRAWLER_PAGE_DELAY_SECONDS,
    CRAWLER_PAGE_TIMEOUT_MS,
    CRAWLER_TRUNCATION_MARKER,
)
from enrichment_worker.exceptions import CrawlerUnavailableError
from enrichment_worker.logging_config import get_structured_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from playwright.sync_api import Browser, BrowserContext, Playwright


logger = logging.getLogger(__name__)

HIGH_PRIORITY_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"service", r"what-we-do", r"our-work", r"offerings",
        r"contact", r"reach", r"get-in-touch", r"connect",
        r"about", r"who-we-are", r"our-team", r"company",
    )
]

MEDIUM_PRIORITY_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"project", r"portfolio", r"gallery", r"work",
        r"testimonial", r"review", r"customer",
        r"area", r"location", r"serving",
    )
]

SKIP_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"blog", r"news", r"article", r"post",
        r"career", r"job", r"hiring",
        r"privacy", r"terms", r"cookie", r"legal",
        r"login", r"sign-?in", r"register", r"account",
        r"cart", r"checkout", r"shop", r"store",
        r"\.pdf$", r"\.jpg$", r"\.png$", r"\.gif$",
        r"facebook\.com", r"twitter\.com", r"instagram\.com", r"linkedin\.com",
        r"youtube\.com", r"yelp\.com", r"google\.com",
        r"tel:", r"mailto:", r"#",
    )
]

# Lower-cased page-title fragments served by WAF and challenge pages
BOT_PROTECTION_TITLES = (
    "403",
    "forbidden",
    "access denied",
    "attention required",
    "just a moment",
    "checking your browser",
    "please wait",
    "ddos protection",
    "blocked",
)

STRIP_SELECTORS = (
    "script", "style", "noscript", "iframe", "svg",
    "nav", "header", "footer", "aside",
    '[role="navigation"]', '[role="banner"]', '[role="contentinfo"]',
    ".cookie-banner", ".popup", ".modal", ".advertisement",
)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

_PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}


@dataclass
class NavLink:
    href: str
    text: str
    priority: str


@dataclass
class CrawlResult:
    url: str
    success: bool
    content: str = ""
    pages_crawled: int = 0
    blocked_by_bot_protection: bool = False
    error: Optional[str] = None


def normalize_url(url: Optional[str]) -> Optional[str]:
    """Add a scheme when missing and drop fragments; None for unusable input."""
    if not url or not url.strip():
        return None
    candidate = url.strip()
    if not candidate.startswith(("http://", "https://")):
        candidate = "https://" + candidate
    parsed = urlparse(candidate)
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return urlunparse(parsed._replace(fragment="", netloc=parsed.netloc.lower()))


def detect_bot_protection(title: Optional[str]) -> bool:
    lowered = (title or "").lower()
    return any(fragment in lowered for fragment in BOT_PROTECTION_TITLES)


def extract_page_text(html: str) -> str:
    """Visible body text with chrome (nav, footer, scripts, popups) removed."""
    soup = BeautifulSoup(html, "html.parser")
    for selector in STRIP_SELECTORS:
        for element in soup.select(selector):
            element.decompose()
    body = soup.body or soup
    text = body.get_text(separator="\n")
    lines = (re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def extract_nav_links(html: str, base_url: str) -> List[NavLink]:
    """Same-host links ranked by how likely they are to hold business details."""
    soup = BeautifulSoup(html, "html.parser")
    base_host = urlparse(base_url).netloc
    links: List[NavLink] = []
    seen = set()

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        text = anchor.get_text(" ", strip=True)
        combined = f"{href} {text}"
        if any(p.search(combined) for p in SKIP_PATTERNS):
            continue

        absolute = normalize_url(urljoin(base_url, href))
        if not absolute or urlparse(absolute).netloc != base_host:
            continue
        if absolute.rstrip("/") == base_url.rstrip("/") or absolute in seen:
            continue
        seen.add(absolute)

        if any(p.search(combined) for p in HIGH_PRIORITY_PATTERNS):
            priority = "high"
        elif any(p.search(combined) for p in MEDIUM_PRIORITY_PATTERNS):
            priority = "medium"
        else:
            priority = "low"
        links.append(NavLink(href=absolute, text=text or href, priority=priority))

    links.sort(key=lambda link: _PRIORITY_RANK[link.priority])
    return links


def truncate_content(content: str, limit: int = CRAWLER_MAX_CONTENT_LENGTH) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + CRAWLER_TRUNCATION_MARKER


def _is_browser_gone(exc: Exception) -> bool:
    message = str(exc).lower()
    return "has been closed" in message or "target closed" in message or "browser closed" in message


class WebCrawler:
    """Playwright-backed crawler with one browser per instance."""

    def __init__(
        self,
        max_pages: int = CRAWLER_MAX_PAGES,
        page_timeout_ms: int = CRAWLER_PAGE_TIMEOUT_MS,
        page_delay: float = CRAWLER_PAGE_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_pages = max_pages
        self.page_timeout_ms = page_timeout_ms
        self.page_delay = page_delay
        self._sleep = sleep
        self._playwright: Optional["Playwright"] = None
        self._browser: Optional["Browser"] = None
        self.slogger = get_structured_logger(__name__)

    def __enter__(self) -> "WebCrawler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self) -> None:
        """
        Launch the browser if it is not running.

        Raises:
            CrawlerUnavailableError: If Playwright is missing or Chromium cannot start
        """
        if self._browser is not None:
            return

        try:
            from playwright.sync_api import Error as PlaywrightError, sync_playwright
        except ImportError as exc:  # pragma: no cover - import guard
            raise CrawlerUnavailableError(
                "Playwright is not installed. Install with `pip install playwright` and "
                "run `playwright install chromium`."
            ) from exc

        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(
                headless=True,
                args=["--disable-dev-shm-usage", "--no-sandbox"],
            )
        except PlaywrightError as exc:
            self.close()
            raise CrawlerUnavailableError(f"Failed to launch browser: {exc}") from exc

        self.slogger.worker_status("crawler_started")

    def close(self) -> None:
        """Release the browser session. Safe to call more than once."""
        browser, playwright = self._browser, self._playwright
        self._browser = None
        self._playwright = None
        if browser is not None:
            try:
                browser.close()
            except Exception as exc:  # noqa: BLE001 - closing a dead browser
                logger.debug("Browser close failed: %s", exc)
        if playwright is not None:
            try:
                playwright.stop()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Playwright stop failed: %s", exc)

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    def crawl(self, website_url: str) -> CrawlResult:
        """
        Crawl a website.

        Site-level problems (timeouts, DNS failures, bot walls) are returned
        as an unsuccessful CrawlResult.

        Raises:
            CrawlerUnavailableError: If the browser cannot start or dies mid-crawl
        """
        base_url = normalize_url(website_url)
        if not base_url:
            return CrawlResult(url=website_url, success=False, error="Invalid URL")

        from playwright.sync_api import Error as PlaywrightError

        self.start()
        self.slogger.crawl_activity(base_url, "started")

        context: Optional["BrowserContext"] = None
        sections: List[str] = []
        pages_crawled = 0
        try:
            context = self._browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1366, "height": 900},
                locale="en-US",
            )
            context.add_init_script(
                "Object.defineProperty(navigator, 'webdriver', { get: () => undefined })"
            )
            page = context.new_page()

            page.goto(base_url, wait_until="networkidle", timeout=self.page_timeout_ms)
            if detect_bot_protection(page.title()):
                self.slogger.crawl_activity(base_url, "blocked", {"title": page.title()})
                return CrawlResult(
                    url=website_url,
                    success=False,
                    error="Site has bot protection (403/Cloudflare)",
                    blocked_by_bot_protection=True,
                )

            html = page.content()
            sections.append(f"=== HOMEPAGE ===\n{extract_page_text(html)}")
            visited = {base_url}
            pages_crawled = 1

            for link in extract_nav_links(html, base_url):
                if pages_crawled >= self.max_pages:
                    break
                if link.href in visited:
                    continue
                self._sleep(self.page_delay)
                try:
                    page.goto(link.href, wait_until="networkidle", timeout=self.page_timeout_ms)
                except PlaywrightError as exc:
                    if _is_browser_gone(exc):
                        raise
                    logger.warning("Failed to crawl %s: %s", link.href, exc)
                    continue
                sections.append(
                    f"=== {link.text.upper()} ({link.href}) ===\n{extract_page_text(page.content())}"
                )
                visited.add(link.href)
                pages_crawled += 1

            content = truncate_content("\n\n".join(sections))
            self.slogger.crawl_activity(
                base_url, "completed", {"pages": pages_crawled, "chars": len(content)}
            )
            return CrawlResult(
                url=base_url, success=True, content=content, pages_crawled=pages_crawled
            )
        except PlaywrightError as exc:
            if _is_browser_gone(exc):
                self.close()
                raise CrawlerUnavailableError(f"Browser crashed while crawling: {exc}") from exc
            self.slogger.crawl_activity(base_url, "failed", {"error": str(exc)[:500]})
            return CrawlResult(
                url=website_url,
                success=False,
                content="\n\n".join(sections),
                pages_crawled=pages_crawled,
                error=str(exc)[:500],
            )
        finally:
            if context is not None and self._browser is not None:
                try:
                    context.close()
                except PlaywrightError as exc:
                    logger.debug("Context close failed: %s", exc)

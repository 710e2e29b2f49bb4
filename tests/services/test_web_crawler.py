"""Tests for the crawler's HTML helpers."""

import pytest

from enrichment_worker.constants import CRAWLER_TRUNCATION_MARKER
from enrichment_worker.rendering.web_crawler import (
    WebCrawler,
    detect_bot_protection,
    extract_nav_links,
    extract_page_text,
    normalize_url,
    truncate_content,
)

HOMEPAGE = """
<html>
  <head><title>Acme Concrete</title></head>
  <body>
    <nav>
      <a href="/">Home</a>
      <a href="/pricing">Pricing</a>
      <a href="/gallery">Gallery</a>
      <a href="/services">Our Services</a>
      <a href="/contact-us">Contact</a>
      <a href="/blog/driveway-tips">Blog</a>
      <a href="/privacy">Privacy Policy</a>
      <a href="https://facebook.com/acme">Facebook</a>
      <a href="https://partner.example/services">Partner</a>
      <a href="tel:5035550100">Call</a>
      <a href="/services">Services again</a>
    </nav>
    <main>
      <h1>Acme   Concrete</h1>
      <p>Driveways, patios and   foundations.</p>
      <script>window.analytics = {};</script>
    </main>
    <footer>Copyright Acme</footer>
  </body>
</html>
"""


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("acme.example", "https://acme.example"),
        ("  http://Acme.Example/about#team ", "http://acme.example/about"),
        ("https://acme.example/services?x=1", "https://acme.example/services?x=1"),
        ("localhost", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_url(raw, expected):
    assert normalize_url(raw) == expected


@pytest.mark.parametrize(
    "title,blocked",
    [
        ("Just a moment...", True),
        ("Attention Required! | Cloudflare", True),
        ("403 Forbidden", True),
        ("Acme Concrete | Portland Driveways", False),
        (None, False),
    ],
)
def test_detect_bot_protection(title, blocked):
    assert detect_bot_protection(title) is blocked


def test_extract_page_text_strips_chrome():
    assert extract_page_text(HOMEPAGE) == "Acme Concrete\nDriveways, patios and foundations."


def test_extract_nav_links_ranks_and_filters():
    links = extract_nav_links(HOMEPAGE, "https://acme.example/")

    assert [(link.href, link.priority) for link in links] == [
        ("https://acme.example/services", "high"),
        ("https://acme.example/contact-us", "high"),
        ("https://acme.example/gallery", "medium"),
        ("https://acme.example/pricing", "low"),
    ]
    assert links[0].text == "Our Services"


def test_truncate_content():
    assert truncate_content("short", limit=10) == "short"
    assert truncate_content("x" * 12, limit=10) == "x" * 10 + CRAWLER_TRUNCATION_MARKER


def test_invalid_url_fails_without_starting_browser():
    with WebCrawler() as crawler:
        result = crawler.crawl("not a website")
        assert crawler.is_running is False

    assert result.success is False
    assert result.error == "Invalid URL"

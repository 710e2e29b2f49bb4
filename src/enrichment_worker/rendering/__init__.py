"""Headless browser crawling for contractor websites."""

from .web_crawler import CrawlResult, WebCrawler, detect_bot_protection

__all__ = ["CrawlResult", "WebCrawler", "detect_bot_protection"]

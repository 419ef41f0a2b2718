"""
Page driver exports.
"""

from app.crawler.drivers.base import PageContextPool, PageDriver
from app.crawler.drivers.static_html import StaticHtmlPageDriver

__all__ = ["PageContextPool", "PageDriver", "StaticHtmlPageDriver"]

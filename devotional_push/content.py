"""Scrape the word of the day from the devotional source page."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Optional

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel

from .errors import ContentProviderFailure

logger = logging.getLogger(__name__)

TITLE_SELECTOR = ".daily-suptitle"
CONTENT_SELECTOR = ".daily-content"
DATE_SELECTOR = ".daily-date"

_WS = re.compile(r"\s+")


class Devotional(BaseModel):
    title: str
    content: str
    date: str
    source: str


def _text(soup: BeautifulSoup, selector: str) -> str:
    node = soup.select_one(selector)
    return node.get_text().strip() if node is not None else ""


def parse_devotional(html: str, source: str, default_title: str = "Palabra del Día") -> Devotional:
    soup = BeautifulSoup(html, "html.parser")
    content = _WS.sub(" ", _text(soup, CONTENT_SELECTOR)).strip()
    if not content:
        raise ContentProviderFailure(f"no devotional content found at {source}")
    return Devotional(
        title=_text(soup, TITLE_SELECTOR) or default_title,
        content=content,
        date=_text(soup, DATE_SELECTOR) or date.today().isoformat(),
        source=source,
    )


def fetch_devotional(
    url: str,
    timeout: float = 15.0,
    default_title: str = "Palabra del Día",
    client: Optional[httpx.Client] = None,
) -> Devotional:
    owns_client = client is None
    http = client or httpx.Client(timeout=timeout, follow_redirects=True)
    try:
        response = http.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        logger.warning("devotional source returned HTTP %s", exc.response.status_code)
        raise ContentProviderFailure(f"HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        logger.warning("devotional source unreachable: %s", exc)
        raise ContentProviderFailure(f"could not fetch devotional: {exc}") from exc
    finally:
        if owns_client:
            http.close()
    return parse_devotional(response.text, url, default_title)

from __future__ import annotations

import datetime as dt
import logging
import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from typing import Dict, Iterable, List, Optional

import httpx
from dateutil import parser as dtparser

from .config import settings
from .errors import InvalidInput, NetworkFailure
from .models import Article, ArticlePage
from .utils import canonicalize_url, first_image_src, normalize_whitespace, strip_markup

logger = logging.getLogger(__name__)

MEDIA_NS = "http://search.yahoo.com/mrss/"


def _strip_ns(tag: str) -> str:
    return tag.split('}', 1)[1] if tag.startswith('{') and '}' in tag else tag


def _ns(tag: str) -> str:
    return tag[1:].split('}', 1)[0] if tag.startswith('{') and '}' in tag else ""


def _text(node: Optional[ET.Element]) -> str:
    if node is None:
        return ""
    return "".join(node.itertext()).strip()


def _find_child(parent: ET.Element, names: List[str]) -> Optional[ET.Element]:
    for ch in list(parent):
        if _strip_ns(ch.tag) in names:
            return ch
    return None


def _find_children(parent: ET.Element, name: str) -> List[ET.Element]:
    return [ch for ch in list(parent) if _strip_ns(ch.tag) == name]


def _utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def parse_rfc822(raw: str) -> dt.datetime:
    """Parse an RSS pubDate ("Tue, 03 Jun 2025 14:05:00 +0000")."""
    try:
        return _utc(parsedate_to_datetime((raw or "").strip()))
    except (TypeError, ValueError, IndexError) as e:
        raise InvalidInput(f"unparseable RFC-822 date: {raw!r}") from e


def parse_iso(raw: str) -> dt.datetime:
    try:
        return _utc(dtparser.isoparse((raw or "").strip()))
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidInput(f"unparseable ISO date: {raw!r}") from e


def _image_url(entry: ET.Element, raw_description: str) -> Optional[str]:
    # 1) explicit enclosure / media:content
    for ch in list(entry):
        name = _strip_ns(ch.tag)
        is_enclosure = name == "enclosure" and not _ns(ch.tag)
        is_media_content = name == "content" and _ns(ch.tag) == MEDIA_NS
        if not (is_enclosure or is_media_content):
            continue
        url = (ch.attrib.get("url") or "").strip()
        kind = (ch.attrib.get("type") or ch.attrib.get("medium") or "image").lower()
        if url and kind.startswith("image"):
            return url
    # 2) media:thumbnail
    for ch in list(entry):
        if _strip_ns(ch.tag) == "thumbnail" and _ns(ch.tag) == MEDIA_NS:
            url = (ch.attrib.get("url") or "").strip()
            if url:
                return url
    # 3) first inline <img> in the description markup
    return first_image_src(raw_description) or None


def _entry_link(entry: ET.Element) -> str:
    # RSS <link>text</link>, Atom <link rel="alternate" href="..."/>
    for link_el in _find_children(entry, "link"):
        rel = (link_el.attrib.get("rel") or "alternate").lower()
        href = (link_el.attrib.get("href") or "").strip()
        if href and rel == "alternate":
            return href
        txt = _text(link_el)
        if txt:
            return txt
    guid = _find_child(entry, ["guid", "id"])
    txt = _text(guid)
    return txt if txt.startswith("http") else ""


def _entry_published(entry: ET.Element) -> dt.datetime:
    pub = _text(_find_child(entry, ["pubDate"]))
    if pub:
        return parse_rfc822(pub)
    for name in ["published", "updated", "date"]:
        v = _text(_find_child(entry, [name]))
        if v:
            return parse_iso(v)
    raise InvalidInput("missing publish date")


def _parse_entry(entry: ET.Element, source_name: str) -> Article:
    title = normalize_whitespace(_text(_find_child(entry, ["title"])))
    if not title:
        raise InvalidInput("missing title")

    link = _entry_link(entry)
    if not link.startswith(("http://", "https://")):
        raise InvalidInput(f"missing or relative link: {link!r}")

    raw_description = ""
    for name in ["description", "summary", "content", "encoded"]:
        for node in _find_children(entry, name):
            if _ns(node.tag) == MEDIA_NS:
                continue
            raw_description = _text(node)
            if raw_description:
                break
        if raw_description:
            break

    description = strip_markup(raw_description)
    return Article(
        title=title,
        canonical_url=canonicalize_url(link),
        published_at=_entry_published(entry),
        source_name=source_name,
        description=description or None,
        image_url=_image_url(entry, raw_description),
    )


def parse_feed(raw: bytes, source_name: str) -> List[Article]:
    """Decode an RSS 2.0 / Atom document into articles.

    Never raises on bad markup: an unparseable document yields an empty list,
    and an item with a missing link, title or unparseable date is skipped.
    """
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as e:
        logger.warning("feed %s: unparseable XML: %s", source_name, e)
        return []

    root_tag = _strip_ns(root.tag)
    if root_tag == "rss":
        channel = _find_child(root, ["channel"])
        entries = _find_children(channel if channel is not None else root, "item")
    elif root_tag == "feed":
        entries = _find_children(root, "entry")
    else:
        # RDF and other containers
        entries = [el for el in root.iter() if _strip_ns(el.tag) in ("item", "entry")]

    items: List[Article] = []
    skipped = 0
    for e in entries:
        try:
            items.append(_parse_entry(e, source_name))
        except InvalidInput as err:
            skipped += 1
            logger.debug("feed %s: skipping item: %s", source_name, err)
    if skipped:
        logger.info("feed %s: parsed=%d skipped=%d", source_name, len(items), skipped)
    return items


async def fetch_feed(client: httpx.AsyncClient, url: str, source_name: str, timeout: Optional[float] = None) -> List[Article]:
    try:
        r = await client.get(
            url,
            timeout=timeout or settings.request_timeout,
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
        )
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise NetworkFailure(f"{source_name}: HTTP {e.response.status_code}", status_code=e.response.status_code) from e
    except httpx.HTTPError as e:
        raise NetworkFailure(f"{source_name}: {e.__class__.__name__}: {e}") from e
    return parse_feed(r.content, source_name)


def merge_articles(batches: Iterable[List[Article]]) -> List[Article]:
    """Merge feeds newest-first, keeping one article per canonical URL."""
    merged = [a for batch in batches for a in batch]
    merged.sort(key=lambda a: (a.published_at, a.canonical_url), reverse=True)
    seen: set[str] = set()
    out: List[Article] = []
    for a in merged:
        if a.canonical_url in seen:
            continue
        seen.add(a.canonical_url)
        out.append(a)
    return out


def search_articles(articles: List[Article], query: Optional[str]) -> List[Article]:
    q = normalize_whitespace(query or "").lower()
    if not q:
        return list(articles)
    return [a for a in articles if q in a.title.lower() or q in a.source_name.lower()]


def paginate(articles: List[Article], page: int, page_size: int) -> ArticlePage:
    if page < 1:
        raise InvalidInput(f"page must be >= 1, got {page}")
    if page_size < 1:
        raise InvalidInput(f"page_size must be >= 1, got {page_size}")
    start = (page - 1) * page_size
    items = articles[start:start + page_size]
    return ArticlePage(
        page=page,
        page_size=page_size,
        total=len(articles),
        has_more=start + len(items) < len(articles),
        items=items,
    )


def group_by_recency(articles: List[Article], now: Optional[dt.datetime] = None) -> Dict[str, List[Article]]:
    """Bucket articles into Today / Yesterday / Earlier (UTC days)."""
    today = (now or dt.datetime.now(dt.timezone.utc)).astimezone(dt.timezone.utc).date()
    out: Dict[str, List[Article]] = {"Today": [], "Yesterday": [], "Earlier": []}
    for a in articles:
        day = a.published_at.astimezone(dt.timezone.utc).date()
        if day == today:
            out["Today"].append(a)
        elif day == today - dt.timedelta(days=1):
            out["Yesterday"].append(a)
        else:
            out["Earlier"].append(a)
    return {k: v for k, v in out.items() if v}

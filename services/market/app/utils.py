import re
import warnings
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

_RE_IMG_SRC = re.compile(r"""<img[^>]+src=["']([^"']+)["']""", re.IGNORECASE)

def canonicalize_url(url: str) -> str:
    try:
        p = urlparse((url or "").strip())
        q = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True)
             if not k.lower().startswith("utm_") and k.lower() not in ("yclid", "gclid", "fbclid")]
        new = p._replace(query=urlencode(q, doseq=True), fragment="")
        return urlunparse(new)
    except ValueError:
        return url

def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()

def strip_markup(html: str) -> str:
    """Plain text of an HTML fragment, whitespace-normalized."""
    if not html or "<" not in html:
        return normalize_whitespace(html)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return normalize_whitespace(soup.get_text(" ", strip=True))

def first_image_src(html: str) -> str:
    m = _RE_IMG_SRC.search(html or "")
    return m.group(1).strip() if m else ""

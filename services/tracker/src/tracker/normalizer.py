"""Candidate normalization.

Each step is a standalone function so it can be tested on its own:

- ``canonicalize_url`` resolves, cleans and validates a posting URL
- ``derive_identity_key`` picks the key used to match postings across cycles
- ``sanitize_html`` strips executable content from a description
- ``normalize`` chains them for one extractor candidate
"""

from __future__ import annotations

from urllib.parse import unquote_plus, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup
from bs4.element import PreformattedString
from common.utils import normalize_whitespace, sha256_hex

from tracker.errors import NormalizationDiscard
from tracker.models import Candidate, Company, NormalizedPosting

TRACKING_PARAM_PREFIXES = ("utm_",)
TRACKING_PARAMS = {
    "ref",
    "source",
    "gh_src",
    "lever-source",
    "gclid",
    "fbclid",
    "msclkid",
    "mc_cid",
    "mc_eid",
    "_ga",
    "_gl",
    "_hsenc",
    "_hsmi",
}
DEFAULT_PORTS = {"http": 80, "https": 443}
HASH_KEY_PREFIX = "hash:"

EXECUTABLE_TAGS = ["script", "style", "iframe", "object", "embed", "noscript", "template"]
URL_ATTRIBUTES = {"href", "src", "action", "formaction", "xlink:href"}
UNSAFE_URL_SCHEMES = ("javascript:", "vbscript:")


def is_valid_http_url(url: str | None) -> bool:
    if not url or any(ch.isspace() for ch in url):
        return False
    if "invalid-url" in url.lower():
        return False
    try:
        parts = urlsplit(url)
        # .port raises ValueError for non-numeric or out-of-range ports.
        return (
            parts.scheme.lower() in DEFAULT_PORTS
            and bool(parts.hostname)
            and parts.port != 0
        )
    except ValueError:
        return False


def _strip_tracking_params(query: str) -> str:
    kept: list[str] = []
    for part in query.split("&"):
        if not part:
            continue
        key = unquote_plus(part.split("=", 1)[0]).lower()
        if key.startswith(TRACKING_PARAM_PREFIXES) or key in TRACKING_PARAMS:
            continue
        kept.append(part)
    return "&".join(kept)


def canonicalize_url(raw: str | None, base: str | None = None) -> str:
    """Return the canonical form of ``raw`` or ``""`` when it is not a usable URL.

    Relative URLs resolve against ``base``. Scheme and host are lower-cased,
    default ports and tracking parameters are dropped, and fragments are kept
    only when they look like client-side routes (``#/jobs/1``, ``#!/jobs/1``).
    """
    candidate = (raw or "").strip()
    if not candidate:
        return ""
    try:
        if base:
            candidate = urljoin(base, candidate)
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return ""

    scheme = parts.scheme.lower()
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"
    fragment = parts.fragment if parts.fragment.startswith(("/", "!")) else ""
    canonical = urlunsplit(
        (scheme, host, parts.path or "/", _strip_tracking_params(parts.query), fragment)
    )
    return canonical if is_valid_http_url(canonical) else ""


def derive_identity_key(canonical_url: str, title: str | None, location_text: str | None) -> str:
    if canonical_url:
        return canonical_url
    normalized_title = normalize_whitespace(title).casefold()
    if not normalized_title:
        raise NormalizationDiscard("candidate has neither a usable url nor a title")
    normalized_location = normalize_whitespace(location_text).casefold()
    return HASH_KEY_PREFIX + sha256_hex(f"{normalized_title}|{normalized_location}")


def _is_unsafe_url(value: object) -> bool:
    if not isinstance(value, str):
        return False
    compact = "".join(ch for ch in value if not ch.isspace() and ord(ch) >= 32).lower()
    return compact.startswith(UNSAFE_URL_SCHEMES)


def sanitize_html(text: str | None) -> str:
    """Remove executable content while keeping structural markup.

    Pure and idempotent: ``sanitize_html(sanitize_html(x)) == sanitize_html(x)``.
    """
    if not text:
        return ""
    soup = BeautifulSoup(text, "html.parser")
    for element in soup.find_all(EXECUTABLE_TAGS):
        element.decompose()
    # Comments, doctypes, CDATA and processing instructions.
    for node in soup.find_all(string=lambda value: isinstance(value, PreformattedString)):
        node.extract()
    for tag in soup.find_all(True):
        for attribute in list(tag.attrs):
            name = attribute.lower()
            if name.startswith("on"):
                del tag.attrs[attribute]
            elif name in URL_ATTRIBUTES and _is_unsafe_url(tag.attrs[attribute]):
                del tag.attrs[attribute]
    return str(soup)


def html_to_text(text: str | None) -> str:
    if not text:
        return ""
    return normalize_whitespace(BeautifulSoup(text, "html.parser").get_text(" "))


def normalize(candidate: Candidate, company: Company) -> NormalizedPosting:
    source_url = candidate.source_url or ""
    canonical_url = canonicalize_url(source_url, company.resolved_base_url)
    title = normalize_whitespace(candidate.title)
    location_text = normalize_whitespace(candidate.location_text)
    identity_key = derive_identity_key(canonical_url, title, location_text)
    description_text = sanitize_html(candidate.description_html)
    return NormalizedPosting(
        identity_key=identity_key,
        title=title,
        location_text=location_text,
        date_posted_raw=normalize_whitespace(candidate.date_posted_raw) or None,
        description_text=description_text,
        description_plain=html_to_text(description_text),
        source_url=source_url,
        canonical_url=canonical_url,
    )

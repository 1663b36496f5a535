"""Per-host crawl etiquette: robots.txt rules and rate-limit cooldowns."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from urllib import robotparser
from urllib.parse import urlsplit

import httpx

HOST_COOLDOWN_STEPS_S = (300.0, 900.0, 3600.0, 21600.0, 86400.0)


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds requested by a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value or not value.strip():
        return None
    raw = value.strip()
    if raw.isdigit():
        return float(raw)
    try:
        retry_at = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    reference = now or datetime.now(UTC)
    return max(0.0, (retry_at - reference).total_seconds())


class RobotsPolicy:
    """Caches robots.txt rules per origin.

    ``load`` performs the GET for a robots.txt URL. A 401 or 403 disallows the
    whole origin, any other 4xx allows it. A 5xx or a transport error is
    decided by ``fail_open``.
    """

    def __init__(
        self,
        load: Callable[[str], httpx.Response],
        user_agent: str,
        *,
        ttl_s: float = 3600.0,
        fail_open: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._load = load
        self.user_agent = user_agent
        self.ttl_s = ttl_s
        self.fail_open = fail_open
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[robotparser.RobotFileParser, float]] = {}

    def _fetch_rules(self, origin: str) -> robotparser.RobotFileParser:
        robots_url = f"{origin}/robots.txt"
        parser = robotparser.RobotFileParser(robots_url)
        try:
            response = self._load(robots_url)
        except httpx.HTTPError:
            response = None

        if response is not None and response.is_success:
            parser.parse(response.text.splitlines())
        elif response is not None and response.status_code in (401, 403):
            parser.disallow_all = True
        elif response is not None and 400 <= response.status_code < 500:
            parser.allow_all = True
        elif self.fail_open:
            parser.allow_all = True
        else:
            parser.disallow_all = True
        return parser

    def rules_for(self, url: str) -> robotparser.RobotFileParser:
        origin = origin_of(url)
        now = self._clock()
        with self._lock:
            cached = self._cache.get(origin)
            if cached is not None and cached[1] > now:
                return cached[0]
        parser = self._fetch_rules(origin)
        with self._lock:
            self._cache[origin] = (parser, now + self.ttl_s)
        return parser

    def allowed(self, url: str) -> bool:
        return self.rules_for(url).can_fetch(self.user_agent, url)

    def crawl_delay(self, url: str) -> float | None:
        rules = self.rules_for(url)
        delay = rules.crawl_delay(self.user_agent)
        if delay is None:
            delay = rules.crawl_delay("*")
        return float(delay) if delay is not None else None


class HostCooldowns:
    """Hosts that answered HTTP 429 and must be left alone for a while.

    Each consecutive rate-limit response moves the host one step further along
    ``steps``; a successful fetch resets it.
    """

    def __init__(
        self,
        steps: tuple[float, ...] = HOST_COOLDOWN_STEPS_S,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.steps = steps
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: dict[str, int] = {}
        self._until: dict[str, float] = {}

    def remaining(self, host: str) -> float:
        with self._lock:
            until = self._until.get(host)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())

    def record_rate_limited(self, host: str, retry_after_s: float | None = None) -> float:
        """Start a cooldown for ``host`` and return its length in seconds."""
        with self._lock:
            failures = self._failures.get(host, 0) + 1
            self._failures[host] = failures
            cooldown = self.steps[min(failures, len(self.steps)) - 1]
            if retry_after_s is not None:
                cooldown = max(cooldown, retry_after_s)
            self._until[host] = self._clock() + cooldown
            return cooldown

    def record_success(self, host: str) -> None:
        with self._lock:
            self._failures.pop(host, None)
            self._until.pop(host, None)

from __future__ import annotations

import json
import logging
import random
import threading
import time
from collections.abc import Callable
from urllib.parse import urlsplit

import httpx
from common.utils import now_utc_iso

from tracker.errors import FetchError
from tracker.models import Company, RawContent
from tracker.politeness import HostCooldowns, RobotsPolicy, parse_retry_after
from tracker.settings import TrackerSettings

LOGGER = logging.getLogger("jobcorpus.fetcher")

RETRYABLE_STATUS_CODES = {408}
RATE_LIMITED = 429


class DomainRateLimiter:
    """Spaces request starts to the same host by at least ``min_interval_s``.

    Callers for one domain queue on that domain's lock and sleep while holding
    it, so concurrent waiters are served one after another.
    """

    def __init__(
        self,
        min_interval_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._sleep = sleep
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._next_allowed: dict[str, float] = {}

    def _domain_lock(self, domain: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(domain, threading.Lock())

    def wait(self, domain: str, interval: float | None = None) -> float:
        """Block until ``domain`` may be contacted again. Returns the seconds slept.

        ``interval`` widens the spacing after this request, e.g. for a
        robots.txt ``Crawl-delay``.
        """
        spacing = self.min_interval_s if interval is None else interval
        with self._domain_lock(domain):
            now = self._clock()
            ready_at = self._next_allowed.get(domain, now)
            delay = max(0.0, ready_at - now)
            if delay > 0:
                self._sleep(delay)
            self._next_allowed[domain] = max(now, ready_at) + spacing
            return delay


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def host_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


class Fetcher:
    def __init__(
        self,
        settings: TrackerSettings,
        limiter: DomainRateLimiter | None = None,
        *,
        client: httpx.Client | None = None,
        robots: RobotsPolicy | None = None,
        cooldowns: HostCooldowns | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.limiter = limiter or DomainRateLimiter(settings.per_domain_interval_s)
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=settings.request_timeout_s,
            follow_redirects=True,
            headers={"User-Agent": settings.user_agent},
        )
        if robots is None and settings.respect_robots_txt:
            robots = RobotsPolicy(
                self._get_robots,
                settings.user_agent,
                ttl_s=settings.robots_cache_ttl_s,
                fail_open=settings.robots_fail_open,
            )
        self.robots = robots
        self.cooldowns = cooldowns or HostCooldowns()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def backoff_delay(self, attempt: int) -> float:
        delay = min(
            self.settings.retry_base_delay_s * (2 ** (attempt - 1)),
            self.settings.retry_max_delay_s,
        )
        return delay + self._rng.uniform(0, 0.5 * delay)

    def _get(self, url: str) -> httpx.Response:
        return self._client.get(
            url,
            headers={"User-Agent": self.settings.user_agent},
            timeout=self.settings.request_timeout_s,
            follow_redirects=True,
        )

    def _get_robots(self, robots_url: str) -> httpx.Response:
        self.limiter.wait(host_of(robots_url))
        return self._get(robots_url)

    def _attempt(self, url: str, attempt: int) -> httpx.Response:
        try:
            response = self._get(url)
        except httpx.TransportError as exc:
            raise FetchError(
                f"request to {url} failed: {exc.__class__.__name__}: {exc}",
                url=url,
                retryable=True,
                attempts=attempt,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(
                f"request to {url} failed: {exc.__class__.__name__}: {exc}",
                url=url,
                attempts=attempt,
            ) from exc

        if response.is_success:
            return response
        if response.status_code == RATE_LIMITED:
            host = host_of(url)
            cooldown = self.cooldowns.record_rate_limited(
                host,
                parse_retry_after(response.headers.get("retry-after")),
            )
            LOGGER.warning(
                json.dumps({"event": "host_cooldown", "host": host, "cooldown_s": cooldown})
            )
        raise FetchError(
            f"GET {url} returned HTTP {response.status_code}",
            url=url,
            status_code=response.status_code,
            retryable=is_retryable_status(response.status_code),
            attempts=attempt,
        )

    def _check_politeness(self, company: Company, url: str, domain: str) -> float | None:
        """Raise when ``url`` may not be fetched now; return the robots crawl delay."""
        remaining = self.cooldowns.remaining(domain)
        if remaining > 0:
            LOGGER.info(
                json.dumps(
                    {
                        "event": "fetch_skipped",
                        "company_id": company.company_id,
                        "reason": "host_cooldown",
                        "host": domain,
                    }
                )
            )
            raise FetchError(
                f"{domain} is cooling down after HTTP 429 for another {remaining:.0f}s",
                url=url,
            )
        if self.robots is None:
            return None
        if not self.robots.allowed(url):
            LOGGER.info(
                json.dumps(
                    {
                        "event": "fetch_skipped",
                        "company_id": company.company_id,
                        "reason": "blocked_by_robots",
                        "url": url,
                    }
                )
            )
            raise FetchError(f"robots.txt disallows {url}", url=url)
        return self.robots.crawl_delay(url)

    def fetch(self, company: Company) -> RawContent:
        url = company.fetch_url
        domain = host_of(url)
        total_attempts = 1 + self.settings.max_retries
        crawl_delay = self._check_politeness(company, url, domain)
        interval = max(self.settings.per_domain_interval_s, crawl_delay or 0.0)

        attempt = 0
        while True:
            attempt += 1
            self.limiter.wait(domain, interval)
            try:
                response = self._attempt(url, attempt)
            except FetchError as exc:
                if not exc.retryable or attempt >= total_attempts:
                    raise
                delay = self.backoff_delay(attempt)
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "fetch_retry",
                            "company_id": company.company_id,
                            "url": url,
                            "attempt": attempt,
                            "status_code": exc.status_code,
                            "error": str(exc),
                            "delay_s": round(delay, 3),
                        }
                    )
                )
                self._sleep(delay)
                continue

            self.cooldowns.record_success(domain)
            return RawContent(
                url=url,
                final_url=str(response.url),
                status_code=response.status_code,
                content_type=response.headers.get("content-type"),
                body=response.text,
                fetched_at=now_utc_iso(),
            )

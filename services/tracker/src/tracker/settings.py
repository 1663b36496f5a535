from __future__ import annotations

import os
import tempfile

from pydantic import BaseModel, Field

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "job-corpus", "tracker.sqlite3")
DEFAULT_USER_AGENT = "job-corpus/0.1 (+contact)"


class TrackerSettings(BaseModel):
    database_path: str = DEFAULT_DB_PATH
    sources_path: str | None = None
    request_timeout_s: float = Field(default=20.0, gt=0)
    max_retries: int = Field(default=2, ge=0, le=10)
    retry_base_delay_s: float = Field(default=0.25, ge=0)
    retry_max_delay_s: float = Field(default=2.0, ge=0)
    per_domain_interval_s: float = Field(default=1.0, ge=0)
    worker_count: int = Field(default=4, ge=1, le=64)
    user_agent: str = DEFAULT_USER_AGENT
    default_search_limit: int = Field(default=100, ge=1, le=500)
    respect_robots_txt: bool = True
    robots_fail_open: bool = True
    robots_cache_ttl_s: float = Field(default=3600.0, ge=0)

    @classmethod
    def from_env(cls) -> TrackerSettings:
        env_fields = {
            "database_path": "TRACKER_DB_PATH",
            "sources_path": "TRACKER_SOURCES_PATH",
            "request_timeout_s": "TRACKER_REQUEST_TIMEOUT_S",
            "max_retries": "TRACKER_MAX_RETRIES",
            "retry_base_delay_s": "TRACKER_RETRY_BASE_DELAY_S",
            "retry_max_delay_s": "TRACKER_RETRY_MAX_DELAY_S",
            "per_domain_interval_s": "TRACKER_PER_DOMAIN_INTERVAL_S",
            "worker_count": "TRACKER_WORKER_COUNT",
            "user_agent": "TRACKER_USER_AGENT",
            "default_search_limit": "TRACKER_DEFAULT_SEARCH_LIMIT",
            "respect_robots_txt": "TRACKER_RESPECT_ROBOTS_TXT",
            "robots_fail_open": "TRACKER_ROBOTS_FAIL_OPEN",
            "robots_cache_ttl_s": "TRACKER_ROBOTS_CACHE_TTL_S",
        }
        values: dict[str, str] = {}
        for field_name, env_name in env_fields.items():
            raw = os.getenv(env_name, "").strip()
            if raw:
                values[field_name] = raw
        # Pydantic coerces the numeric strings and raises ValueError on bad input.
        return cls.model_validate(values)

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tracker.extractors import BUILTIN_EXTRACTORS
from tracker.models import Candidate, Company, CompanyConfig, RawContent
from tracker.repository import CorpusRepository

LOGGER = logging.getLogger("jobcorpus.registry")

Extractor = Callable[[RawContent, Company], list[Candidate]]


def load_companies(path: str | Path) -> list[CompanyConfig]:
    """Read company source configuration from a JSON file.

    Accepts either a bare list of company objects or ``{"companies": [...]}``.
    """
    source = Path(path)
    try:
        payload: Any = json.loads(source.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"Cannot read sources file {source}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Sources file {source} is not valid JSON: {exc}") from exc

    if isinstance(payload, dict):
        payload = payload.get("companies")
    if not isinstance(payload, list):
        raise ValueError(f"Sources file {source} must contain a list of companies.")

    companies: list[CompanyConfig] = []
    seen: set[str] = set()
    for index, item in enumerate(payload):
        try:
            config = CompanyConfig.model_validate(item)
        except ValidationError as exc:
            raise ValueError(f"Invalid company at index {index} in {source}: {exc}") from exc
        if config.company_id in seen:
            raise ValueError(f"Duplicate company_id in {source}: {config.company_id}")
        seen.add(config.company_id)
        companies.append(config)
    return companies


class ExtractorRegistry:
    def __init__(self) -> None:
        self._extractors: dict[str, Extractor] = {}

    def add(self, name: str, extractor: Extractor) -> None:
        if not name.strip():
            raise ValueError("Extractor name must not be blank.")
        self._extractors[name] = extractor

    def register(self, name: str) -> Callable[[Extractor], Extractor]:
        def decorator(extractor: Extractor) -> Extractor:
            self.add(name, extractor)
            return extractor

        return decorator

    def get(self, name: str) -> Extractor:
        try:
            return self._extractors[name]
        except KeyError:
            raise KeyError(f"Unknown extractor: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._extractors)

    def __contains__(self, name: object) -> bool:
        return name in self._extractors


def default_extractors() -> ExtractorRegistry:
    registry = ExtractorRegistry()
    for name, extractor in BUILTIN_EXTRACTORS.items():
        registry.add(name, extractor)
    return registry


class SourceRegistry:
    """Configured companies plus the extractors they reference."""

    def __init__(
        self,
        companies: Iterable[CompanyConfig] = (),
        extractors: ExtractorRegistry | None = None,
    ) -> None:
        self.extractors = extractors or default_extractors()
        self.companies: dict[str, CompanyConfig] = {}
        for config in companies:
            self.add_company(config)

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        extractors: ExtractorRegistry | None = None,
    ) -> SourceRegistry:
        return cls(load_companies(path), extractors)

    def add_company(self, config: CompanyConfig) -> None:
        if config.extractor not in self.extractors:
            raise ValueError(
                f"Company {config.company_id} references unknown extractor "
                f"{config.extractor!r}; known: {', '.join(self.extractors.names())}"
            )
        self.companies[config.company_id] = config

    def extractor_for(self, company: Company) -> Extractor:
        return self.extractors.get(company.extractor)

    def sync(self, repository: CorpusRepository) -> list[Company]:
        synced = [repository.upsert_company(config) for config in self.companies.values()]
        LOGGER.info(json.dumps({"event": "sources_synced", "companies": len(synced)}))
        return synced

from __future__ import annotations

from dataclasses import dataclass

from ..config import EarlySignalsConfig
from ..utils import stable_id_from_url


@dataclass(frozen=True)
class EarlySignalUnit:
    threat_type: str
    country: str
    queries: tuple[str, ...]

    @property
    def unit_id(self) -> str:
        return f"early:{self.threat_type}:{self.country}"

    @property
    def label(self) -> str:
        return f"{self.threat_type} / {self.country}"


def build_catalog(
    threat_types: list[str], countries: list[str], query_templates: list[str]
) -> list[EarlySignalUnit]:
    if not threat_types or not countries or not query_templates:
        raise ValueError("early signals catalog needs threat types, countries and templates")
    units = []
    for threat_type in threat_types:
        for country in countries:
            queries = []
            for template in query_templates:
                query = template.format(threat=threat_type, country=country)
                if query not in queries:
                    queries.append(query)
            units.append(
                EarlySignalUnit(threat_type=threat_type, country=country, queries=tuple(queries))
            )
    return units


def catalog_from_config(config: EarlySignalsConfig) -> list[EarlySignalUnit]:
    return build_catalog(config.threat_types, config.countries, config.query_templates)


def macro_total(catalog: list[EarlySignalUnit]) -> int:
    return len(catalog)


def micro_total(catalog: list[EarlySignalUnit]) -> int:
    return sum(len(unit.queries) for unit in catalog)


def catalog_fingerprint(catalog: list[EarlySignalUnit]) -> str:
    joined = "\n".join(query for unit in catalog for query in unit.queries)
    return stable_id_from_url(joined)[:12]

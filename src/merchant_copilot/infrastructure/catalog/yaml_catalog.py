"""
YAML Entity Catalog and Case Library
====================================

Read-only data sources backing the default collaborators:

- `EntityCatalog`: merchants with their recorded metrics, loaded from
  a YAML file with an `entities:` list
- `CaseLibrary`: past assistance cases used by case matching, loaded from
  a YAML file with a `cases:` list

Malformed records are skipped with a warning; a missing or unreadable file
raises ConfigurationError.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

from merchant_copilot.core.domain.errors import ConfigurationError
from merchant_copilot.core.domain.models import Entity

logger = structlog.get_logger()


def _load_yaml_list(path: Path, key: str) -> list[dict[str, Any]]:
    if not path.exists():
        raise ConfigurationError(f"Data file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    records = data.get(key, []) if isinstance(data, dict) else []
    if not isinstance(records, list):
        raise ConfigurationError(f"'{key}' in {path} must be a list")
    return records


class EntityCatalog:
    """
    Read-only entity catalog.

    YAML record format:
        - id: M001
          name: 海底捞火锅
          category: 餐饮-火锅
          metrics: {collection: 92, operational: 88, ...}
          rent_to_sales_ratio: 0.18

    Every key other than id, name and category ends up in
    `Entity.attributes`.
    """

    def __init__(self, entities: list[Entity]):
        self._entities = list(entities)
        self._by_id = {entity.id: entity for entity in self._entities}

    @classmethod
    def from_file(cls, path: str | Path) -> "EntityCatalog":
        path = Path(path)
        log = logger.bind(component="entity_catalog")
        entities: list[Entity] = []
        for record in _load_yaml_list(path, "entities"):
            if not isinstance(record, dict) or not record.get("id") or not record.get("name"):
                log.warning("catalog.record.skipped", record=str(record)[:100])
                continue
            entities.append(
                Entity(
                    id=str(record["id"]),
                    name=str(record["name"]),
                    category=str(record.get("category", "")),
                    attributes={
                        k: v for k, v in record.items() if k not in ("id", "name", "category")
                    },
                )
            )
        log.info("catalog.loaded", path=str(path), entities=len(entities))
        return cls(entities)

    def lookup_entity_catalog(self) -> list[Entity]:
        return list(self._entities)

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._by_id.get(entity_id)

    def find_by_name(self, name: str) -> Optional[Entity]:
        return next((entity for entity in self._entities if entity.name == name), None)

    def __len__(self) -> int:
        return len(self._entities)


@dataclass(frozen=True)
class Case:
    """A past assistance case."""

    id: str
    title: str
    industry: str = ""
    tags: tuple[str, ...] = ()
    actions: tuple[str, ...] = ()
    expected_effect: str = ""
    risk_level: str = ""
    success_rate: float = 0.0
    initial_metrics: dict[str, float] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "industry": self.industry,
            "tags": list(self.tags),
            "actions": list(self.actions),
            "expected_effect": self.expected_effect,
            "risk_level": self.risk_level,
            "success_rate": self.success_rate,
        }


class CaseLibrary:
    """Read-only collection of assistance cases."""

    def __init__(self, cases: list[Case]):
        self.cases = list(cases)

    @classmethod
    def from_file(cls, path: str | Path) -> "CaseLibrary":
        path = Path(path)
        log = logger.bind(component="case_library")
        cases: list[Case] = []
        for record in _load_yaml_list(path, "cases"):
            if not isinstance(record, dict) or not record.get("id"):
                log.warning("case.record.skipped", record=str(record)[:100])
                continue
            cases.append(
                Case(
                    id=str(record["id"]),
                    title=str(record.get("title", "")),
                    industry=str(record.get("industry", "")),
                    tags=tuple(record.get("tags", []) or ()),
                    actions=tuple(record.get("actions", []) or ()),
                    expected_effect=str(record.get("expected_effect", "")),
                    risk_level=str(record.get("risk_level", "")),
                    success_rate=float(record.get("success_rate", 0.0)),
                    initial_metrics=dict(record.get("initial_metrics", {}) or {}),
                )
            )
        log.info("case_library.loaded", path=str(path), cases=len(cases))
        return cls(cases)

    def __len__(self) -> int:
        return len(self.cases)

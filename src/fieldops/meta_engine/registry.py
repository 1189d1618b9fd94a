from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

import yaml

from fieldops.exceptions.handlers import ConfigurationError
from fieldops.meta_engine.models.entity import EntityMetadata

logger = logging.getLogger(__name__)

BUILTIN_ENTITY_DIR = Path(__file__).resolve().parent / "entities"


def _read_yaml_documents(directory: Path) -> List[Dict[str, Any]]:
    documents: List[Dict[str, Any]] = []
    paths = sorted(p for p in directory.iterdir() if p.suffix in (".yaml", ".yml"))
    for path in paths:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Entity file must contain a mapping: {path}", config_key="METADATA_PATH"
            )
        data.setdefault("__source__", str(path))
        documents.append(data)
    return documents


def load_entity_documents(extra_path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Built-in entity documents, with documents from ``extra_path`` replacing them by name."""
    merged: Dict[str, Dict[str, Any]] = {}
    for doc in _read_yaml_documents(BUILTIN_ENTITY_DIR):
        merged[str(doc.get("entity_name"))] = doc
    if extra_path:
        directory = Path(extra_path)
        if not directory.is_dir():
            raise ConfigurationError(
                f"Metadata directory not found: {extra_path}", config_key="METADATA_PATH"
            )
        for doc in _read_yaml_documents(directory):
            name = str(doc.get("entity_name"))
            if name in merged:
                logger.info("Entity %s overridden by %s", name, doc["__source__"])
            merged[name] = doc
    return list(merged.values())


def _kebab(value: str) -> str:
    return value.replace("_", "-")


class EntityRegistry:
    """
    Read-only catalogue of entity metadata.

    Lookups by entity name fail loudly: an unknown name here means a route and
    the registry disagree, which is a deployment defect rather than a client
    error. URL-facing resolution goes through :meth:`normalize_entity_name`.
    """

    def __init__(self, entities: Iterable[EntityMetadata]) -> None:
        by_name: Dict[str, EntityMetadata] = {}
        by_table: Dict[str, EntityMetadata] = {}
        aliases: Dict[str, str] = {}
        for meta in entities:
            if meta.entity_name in by_name:
                raise ConfigurationError(
                    f"Duplicate entity: {meta.entity_name}", config_key="entity"
                )
            if meta.table_name in by_table:
                raise ConfigurationError(
                    f"Table {meta.table_name} mapped by {by_table[meta.table_name].entity_name} "
                    f"and {meta.entity_name}",
                    config_key="entity",
                )
            by_name[meta.entity_name] = meta
            by_table[meta.table_name] = meta
            for alias in (
                meta.entity_name,
                meta.table_name,
                _kebab(meta.entity_name),
                _kebab(meta.table_name),
            ):
                aliases.setdefault(alias.lower(), meta.entity_name)

        self._by_name: Mapping[str, EntityMetadata] = MappingProxyType(by_name)
        self._by_table: Mapping[str, EntityMetadata] = MappingProxyType(by_table)
        self._aliases: Mapping[str, str] = MappingProxyType(aliases)

    @classmethod
    def from_documents(cls, documents: Iterable[Mapping[str, Any]]) -> "EntityRegistry":
        return cls(
            EntityMetadata.from_dict(doc, source=str(doc.get("__source__", "<dict>")))
            for doc in documents
        )

    @classmethod
    def load(cls, extra_path: Optional[str] = None) -> "EntityRegistry":
        registry = cls.from_documents(load_entity_documents(extra_path))
        logger.info("Entity registry loaded: %s", ", ".join(registry.names()))
        return registry

    def __iter__(self) -> Iterator[EntityMetadata]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, entity_name: object) -> bool:
        return entity_name in self._by_name

    def names(self) -> List[str]:
        return list(self._by_name)

    def get(self, entity_name: str) -> EntityMetadata:
        meta = self._by_name.get(entity_name)
        if meta is None:
            raise ConfigurationError(
                f"Unknown entity: {entity_name!r} (no metadata registered)",
                config_key="entity",
                entity=entity_name,
            )
        return meta

    def find(self, entity_name: str) -> Optional[EntityMetadata]:
        return self._by_name.get(entity_name)

    def by_table(self, table_name: str) -> Optional[EntityMetadata]:
        return self._by_table.get(table_name)

    def normalize_entity_name(self, raw: Optional[str]) -> Optional[str]:
        """Map an entity name, table name or kebab-case URL segment to the entity name."""
        if not isinstance(raw, str):
            return None
        return self._aliases.get(raw.strip().lower())

    def get_required_parents(self, entity_name: str) -> List[str]:
        """Entities that must exist before ``entity_name`` can be created."""
        meta = self.get(entity_name)
        parents: List[str] = []
        for field_name in meta.required_fields:
            fk = meta.foreign_keys.get(field_name)
            if fk is None:
                continue
            parent = self._by_table.get(fk.table)
            if parent is None:
                raise ConfigurationError(
                    f"{entity_name}.{field_name} references unknown table {fk.table}",
                    config_key=entity_name,
                )
            if parent.entity_name != entity_name and parent.entity_name not in parents:
                parents.append(parent.entity_name)
        return parents

    def creation_order(self) -> List[str]:
        """All entities ordered so that required parents come first."""
        order: List[str] = []
        visiting: List[str] = []

        def visit(name: str) -> None:
            if name in order:
                return
            if name in visiting:
                cycle = " -> ".join(visiting[visiting.index(name):] + [name])
                raise ConfigurationError(
                    f"Required foreign keys form a cycle: {cycle}", config_key="entity"
                )
            visiting.append(name)
            for parent in self.get_required_parents(name):
                visit(parent)
            visiting.pop()
            order.append(name)

        for name in self._by_name:
            visit(name)
        return order

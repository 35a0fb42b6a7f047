import copy
import json
import logging
from pathlib import Path

from fhir.resources.R4B.structuredefinition import StructureDefinition
from pydantic import ValidationError

from ..consts import EXTENSION_BASE_DEFINITION

logger = logging.getLogger(__name__)


class BaseDefinitions:
    """Lookup of FHIR StructureDefinitions by id, url or type name.

    Results are deep copies, callers are free to modify them.
    """

    def __init__(self) -> None:
        self._by_key: dict[str, dict] = {}

    @staticmethod
    def from_directory(path: str | Path) -> "BaseDefinitions":
        definitions = BaseDefinitions()
        for file in sorted(Path(path).glob("**/*.json")):
            try:
                content = json.loads(file.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("skipping '%s', not a JSON file", str(file))
                continue

            for resource in _structure_definitions(content):
                try:
                    StructureDefinition.model_validate(resource)
                except ValidationError as e:
                    logger.error("invalid StructureDefinition '%s' in '%s'", resource.get("id"), str(file))
                    logger.error(e.errors())
                    continue
                definitions.add(resource)

        return definitions

    def add(self, definition: dict) -> None:
        for key in (definition.get("id"), definition.get("url")):
            if key:
                self._by_key[key] = definition

        # core types are also known by their type name
        if definition.get("derivation") != "constraint" and definition.get("type"):
            self._by_key.setdefault(definition["type"], definition)

    def find(self, key: str | None) -> dict | None:
        definition = self._by_key.get(key) if key else None
        return copy.deepcopy(definition) if definition is not None else None

    def exists(self, key: str | None) -> bool:
        return bool(key) and key in self._by_key

    def type_hierarchy(self, key: str) -> list[str]:
        """Type names and ids from `key` up through its base definitions."""
        hierarchy = []
        definition = self._by_key.get(key)
        while definition is not None:
            for name in (definition.get("id"), definition.get("type")):
                if name and name not in hierarchy:
                    hierarchy.append(name)
            base = definition.get("baseDefinition")
            definition = self._by_key.get(base) if base else None
            if definition is not None and definition.get("id") in hierarchy:
                break
        return hierarchy

    def profile_urls(self, key: str) -> list[str]:
        urls = []
        for name in self.type_hierarchy(key):
            definition = self._by_key.get(name)
            if definition is not None and definition.get("url") and definition["url"] not in urls:
                urls.append(definition["url"])
        return urls

    def extension_template(self) -> dict:
        template = self.find(EXTENSION_BASE_DEFINITION) or self.find("Extension") or {}
        return {
            key: template[key]
            for key in ("fhirVersion", "mapping", "kind", "abstract", "type")
            if key in template
        }


def _structure_definitions(content: dict) -> list[dict]:
    if content.get("resourceType") == "StructureDefinition":
        return [content]
    if content.get("resourceType") == "Bundle":
        return [
            entry["resource"]
            for entry in content.get("entry", [])
            if entry.get("resource", {}).get("resourceType") == "StructureDefinition"
        ]
    return []

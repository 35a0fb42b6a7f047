import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError

from ..errors import InitializationError
from ..model.content_profile import ContentProfile
from ..model.data_element import DataElement, ValueSet
from ..model.identifier import Identifier
from ..model.mapping import ElementMapping

logger = logging.getLogger(__name__)


class SpecificationsDocument(BaseModel):
    data_elements: list[DataElement] = []
    mappings: list[ElementMapping] = []
    value_sets: list[ValueSet] = []
    content_profiles: list[ContentProfile] = []


class Specifications:
    """Query surface over the loaded domain model."""

    def __init__(self) -> None:
        self._data_elements: dict[Identifier, DataElement] = {}
        self._mappings: dict[Identifier, ElementMapping] = {}
        self._value_sets: dict[str, ValueSet] = {}
        self._content_profiles: dict[Identifier, ContentProfile] = {}

    @staticmethod
    def from_dict(data: dict) -> "Specifications":
        document = SpecificationsDocument.model_validate(data)

        specs = Specifications()
        for de in document.data_elements:
            specs.add_data_element(de)
        for mapping in document.mappings:
            specs.add_mapping(mapping)
        for vs in document.value_sets:
            specs._value_sets[vs.url] = vs
        for cp in document.content_profiles:
            specs._content_profiles[cp.identifier] = cp
        return specs

    @staticmethod
    def from_yaml(file: str | Path) -> "Specifications":
        file = Path(file)

        try:
            data = yaml.safe_load(file.read_text(encoding="utf-8")) or {}
            return Specifications.from_dict(data)

        except (yaml.YAMLError, ValidationError) as e:
            msg = f"failed to load specifications from {str(file)}"
            logger.error(msg)
            logger.error(e)
            raise InitializationError(msg)

    def copy(self) -> "Specifications":
        """A copy that can take additional mappings without changing this instance."""
        specs = Specifications()
        specs._data_elements = dict(self._data_elements)
        specs._mappings = dict(self._mappings)
        specs._value_sets = dict(self._value_sets)
        specs._content_profiles = dict(self._content_profiles)
        return specs

    def add_data_element(self, data_element: DataElement) -> None:
        if data_element.identifier in self._data_elements:
            logger.warning("duplicate data element '%s', keeping the last one", data_element.identifier)
        self._data_elements[data_element.identifier] = data_element

    def add_mapping(self, mapping: ElementMapping) -> None:
        self._mappings[mapping.identifier] = mapping

    def find_by_identifier(self, identifier: Identifier) -> DataElement | None:
        return self._data_elements.get(identifier)

    def find_mapping(self, identifier: Identifier) -> ElementMapping | None:
        return self._mappings.get(identifier)

    def find_value_set(self, url: str) -> ValueSet | None:
        return self._value_sets.get(url)

    def find_content_profile(self, identifier: Identifier) -> ContentProfile | None:
        return self._content_profiles.get(identifier)

    @property
    def data_elements(self) -> list[DataElement]:
        return list(self._data_elements.values())

    @property
    def entries(self) -> list[DataElement]:
        return [de for de in self._data_elements.values() if de.is_entry]

    @property
    def mappings(self) -> list[ElementMapping]:
        return list(self._mappings.values())

    @property
    def value_sets(self) -> list[ValueSet]:
        return list(self._value_sets.values())

    @property
    def content_profiles(self) -> list[ContentProfile]:
        return list(self._content_profiles.values())

from __future__ import annotations

import copy
import itertools
from collections.abc import Iterator

from .element import ElementDefinition, to_camel
from .insert import intended_index_in_list

HEADER_PROPS = (
    "id",
    "meta",
    "implicit_rules",
    "language",
    "text",
    "contained",
    "extension",
    "modifier_extension",
    "url",
    "identifier",
    "version",
    "name",
    "title",
    "status",
    "experimental",
    "date",
    "publisher",
    "contact",
    "description",
    "use_context",
    "jurisdiction",
    "purpose",
    "copyright",
    "keyword",
    "fhir_version",
    "mapping",
    "kind",
    "abstract",
    "context_type",
    "context",
    "context_invariant",
    "type",
    "base_definition",
    "derivation",
)

HEADER_KEYS = {prop: to_camel(prop) for prop in HEADER_PROPS}
HEADER_PROPS_BY_KEY = {key: prop for prop, key in HEADER_KEYS.items()}


class StructureDefinition:
    """An artifact under construction.

    Elements live in an arena keyed by stable integer handles, their order is
    kept in a separate handle list maintained by the ordered insertion
    algorithm.
    """

    def __init__(self, type: str | None = None, slicing_ids: Iterator[int] | None = None) -> None:
        for prop in HEADER_PROPS:
            if prop not in ("type", "description"):
                setattr(self, prop, None)
        self._type: str | None = None
        self._description: str | None = None

        self._nodes: dict[int, ElementDefinition] = {}
        self._order: list[int] = []
        self._handles = itertools.count()
        self._slicing_ids = slicing_ids if slicing_ids is not None else itertools.count(1)

        if type is not None:
            self._type = type
            self.add_element(ElementDefinition(type, min=0, max="*"))

    def __repr__(self) -> str:
        return f"StructureDefinition({self.id!r})"

    @property
    def type(self) -> str | None:
        return self._type

    @type.setter
    def type(self, value: str | None) -> None:
        old = self._type
        self._type = value
        if old and value and old != value:
            for el in self.elements:
                if el.id == old or el.id.startswith((old + ".", old + ":")):
                    el.id = value + el.id[len(old):]

    @property
    def description(self) -> str | None:
        return self._description

    @description.setter
    def description(self, value: str | None) -> None:
        self._description = value
        if value and self.root is not None:
            self.root.definition = value

    @property
    def elements(self) -> list[ElementDefinition]:
        return [self._nodes[handle] for handle in self._order]

    @property
    def root(self) -> ElementDefinition | None:
        return self._nodes[self._order[0]] if self._order else None

    def add_element(self, el: ElementDefinition, index: int | None = None) -> ElementDefinition:
        handle = next(self._handles)
        el.handle = handle
        el.structure = self
        self._nodes[handle] = el
        if index is None:
            index = intended_index_in_list(el.id, [self._nodes[h].id for h in self._order])
        self._order.insert(index, handle)
        return el

    def index_of(self, el: ElementDefinition) -> int:
        return self._order.index(el.handle)

    def new_element(self, name: str) -> ElementDefinition:
        return self.root.new_child_element(name)

    def find_element(self, element_id: str) -> ElementDefinition | None:
        for handle in self._order:
            if self._nodes[handle].id == element_id:
                return self._nodes[handle]
        return None

    def find_element_by_path(self, path: str) -> ElementDefinition | None:
        for el in self.elements:
            if el.path == path and el.slice_name is None:
                return el
        return None

    def detach(self, el: ElementDefinition) -> list[ElementDefinition]:
        removed = [el, *el.descendants()]
        handles = {r.handle for r in removed}
        self._order = [h for h in self._order if h not in handles]
        for r in removed:
            del self._nodes[r.handle]
            r.handle = None
            r.structure = None
        return removed

    def next_slicing_id(self) -> str:
        return str(next(self._slicing_ids))

    @property
    def differential(self) -> list[ElementDefinition]:
        return [el.calculate_diff() for el in self.elements if el.has_diff()]

    def to_json(self) -> dict:
        data = {"resourceType": "StructureDefinition"}
        for prop in HEADER_PROPS:
            value = getattr(self, prop)
            if value is not None:
                data[HEADER_KEYS[prop]] = copy.deepcopy(value)
        data["snapshot"] = {"element": [el.to_json() for el in self.elements]}
        data["differential"] = {"element": [el.to_json() for el in self.differential]}
        return data

    @staticmethod
    def from_json(data: dict, slicing_ids: Iterator[int] | None = None) -> StructureDefinition:
        """Load a snapshot, capturing originals so later edits show up in the differential."""
        sd = StructureDefinition(slicing_ids=slicing_ids)
        for key, value in data.items():
            if key in HEADER_PROPS_BY_KEY:
                setattr(sd, HEADER_PROPS_BY_KEY[key], copy.deepcopy(value))

        for element in data.get("snapshot", {}).get("element", []):
            el = ElementDefinition.from_json(element)
            el.capture_original()
            sd.add_element(el)
        return sd

from __future__ import annotations

from pydantic import BaseModel

from .constraints import Concept
from .identifier import Identifier
from .values import Value


class DataElement(BaseModel):
    identifier: Identifier
    description: str | None = None
    is_entry: bool = False
    is_abstract: bool = False
    based_on: list[Identifier] = []
    concepts: list[Concept] = []
    value: Value | None = None
    fields: list[Value] = []

    @property
    def value_and_fields(self) -> list:
        return [self.value, *self.fields] if self.value is not None else list(self.fields)


class ValueSet(BaseModel):
    url: str
    identifier: Identifier | None = None
    description: str | None = None

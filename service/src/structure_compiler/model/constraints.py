from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from .cardinality import Cardinality
from .identifier import Identifier


class BindingStrength(StrEnum):
    REQUIRED = "required"
    EXTENSIBLE = "extensible"
    PREFERRED = "preferred"
    EXAMPLE = "example"


class Concept(BaseModel):
    system: str | None = None
    code: str
    display: str | None = None

    def to_coding(self) -> dict:
        coding = {"system": self.system, "code": self.code, "display": self.display}
        return {k: v for k, v in coding.items() if v is not None}


class ConstraintBase(BaseModel):
    path: list[Identifier] = []
    on_value: bool = False

    @property
    def is_own(self) -> bool:
        return not self.path and not self.on_value

    def with_path(self, path: list[Identifier], on_value: bool | None = None):
        update = {"path": list(path)}
        if on_value is not None:
            update["on_value"] = on_value
        return self.model_copy(update=update)


class TypeConstraint(ConstraintBase):
    kind: Literal["type"] = "type"
    is_a: Identifier


class CardConstraint(ConstraintBase):
    kind: Literal["card"] = "card"
    card: Cardinality


class ValueSetConstraint(ConstraintBase):
    kind: Literal["value_set"] = "value_set"
    value_set: str
    strength: BindingStrength = BindingStrength.REQUIRED


class CodeConstraint(ConstraintBase):
    kind: Literal["code"] = "code"
    code: Concept


class IncludesTypeConstraint(ConstraintBase):
    kind: Literal["includes_type"] = "includes_type"
    is_a: Identifier
    card: Cardinality = Cardinality(min=0, max=None)


class IncludesCodeConstraint(ConstraintBase):
    kind: Literal["includes_code"] = "includes_code"
    code: Concept


class BooleanConstraint(ConstraintBase):
    kind: Literal["boolean"] = "boolean"
    value: bool


Constraint = Annotated[
    Union[
        TypeConstraint,
        CardConstraint,
        ValueSetConstraint,
        CodeConstraint,
        IncludesTypeConstraint,
        IncludesCodeConstraint,
        BooleanConstraint,
    ],
    Field(discriminator="kind"),
]


class ConstraintsFilter:
    """Chainable views over a list of constraints."""

    def __init__(self, constraints: list | None = None) -> None:
        self.constraints = list(constraints or [])

    def __iter__(self):
        return iter(self.constraints)

    def __len__(self) -> int:
        return len(self.constraints)

    @property
    def has_constraints(self) -> bool:
        return bool(self.constraints)

    def _filter(self, predicate) -> ConstraintsFilter:
        return ConstraintsFilter([c for c in self.constraints if predicate(c)])

    @property
    def own(self) -> ConstraintsFilter:
        return self._filter(lambda c: c.is_own)

    @property
    def child(self) -> ConstraintsFilter:
        return self._filter(lambda c: not c.is_own)

    def with_path(self, path: list[Identifier]) -> ConstraintsFilter:
        path = list(path)
        return self._filter(lambda c: c.path == path)

    @property
    def type(self) -> ConstraintsFilter:
        return self._filter(lambda c: isinstance(c, TypeConstraint))

    @property
    def card(self) -> ConstraintsFilter:
        return self._filter(lambda c: isinstance(c, CardConstraint))

    @property
    def value_set(self) -> ConstraintsFilter:
        return self._filter(lambda c: isinstance(c, ValueSetConstraint))

    @property
    def code(self) -> ConstraintsFilter:
        return self._filter(lambda c: isinstance(c, CodeConstraint))

    @property
    def includes_type(self) -> ConstraintsFilter:
        return self._filter(lambda c: isinstance(c, IncludesTypeConstraint))

    @property
    def includes_code(self) -> ConstraintsFilter:
        return self._filter(lambda c: isinstance(c, IncludesCodeConstraint))

    @property
    def boolean(self) -> ConstraintsFilter:
        return self._filter(lambda c: isinstance(c, BooleanConstraint))

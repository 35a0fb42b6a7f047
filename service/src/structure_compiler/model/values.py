from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from .cardinality import Cardinality
from .constraints import Constraint, ConstraintsFilter
from .identifier import Identifier


class ValueBase(BaseModel):
    card: Cardinality = Cardinality(min=0, max=1)
    constraints: list[Constraint] = []

    @property
    def constraints_filter(self) -> ConstraintsFilter:
        return ConstraintsFilter(self.constraints)

    @property
    def effective_card(self) -> Cardinality:
        cards = self.constraints_filter.own.card.constraints
        return cards[-1].card if cards else self.card

    def with_constraint(self, constraint):
        return self.model_copy(update={"constraints": [*self.constraints, constraint]})

    def with_constraints(self, constraints: list):
        return self.model_copy(update={"constraints": list(constraints)})


class IdentifiableValue(ValueBase):
    kind: Literal["identifiable"] = "identifiable"
    identifier: Identifier
    is_reference: bool = False
    derived_from_includes_type: bool = False

    @property
    def effective_identifier(self) -> Identifier:
        types = self.constraints_filter.own.type.constraints
        return types[-1].is_a if types else self.identifier

    @property
    def possible_identifiers(self) -> list[Identifier]:
        identifiers = [self.identifier]
        own = self.constraints_filter.own
        for constraint in [*own.type, *own.includes_type]:
            if constraint.is_a not in identifiers:
                identifiers.append(constraint.is_a)
        return identifiers


class ChoiceValue(ValueBase):
    kind: Literal["choice"] = "choice"
    options: list[Value] = []

    @property
    def aggregate_options(self) -> list[Value]:
        options = []
        for option in self.options:
            if isinstance(option, ChoiceValue):
                options.extend(option.aggregate_options)
            else:
                options.append(option)
        return options


class TBDValue(ValueBase):
    kind: Literal["tbd"] = "tbd"
    text: str = ""


Value = Annotated[Union[IdentifiableValue, ChoiceValue, TBDValue], Field(discriminator="kind")]

ChoiceValue.model_rebuild()


def choice_friendly_effective_identifier(value) -> Identifier | None:
    if isinstance(value, IdentifiableValue):
        return value.effective_identifier
    if isinstance(value, ChoiceValue):
        types = value.constraints_filter.own.type.constraints
        if types:
            return types[-1].is_a
        options = [o for o in value.aggregate_options if not isinstance(o, TBDValue)]
        if len(options) == 1:
            return choice_friendly_effective_identifier(options[0])
    return None

from __future__ import annotations

import logging

from .data.specifications import Specifications
from .errors import UnsupportedShape
from .model.cardinality import Cardinality, aggregate_cardinality
from .model.constraints import (
    CardConstraint,
    CodeConstraint,
    ConstraintsFilter,
    IncludesCodeConstraint,
    IncludesTypeConstraint,
    TypeConstraint,
)
from .model.data_element import DataElement
from .model.identifier import Identifier
from .model.values import ChoiceValue, IdentifiableValue, choice_friendly_effective_identifier

logger = logging.getLogger(__name__)

CONCEPT = Identifier.primitive("concept")


class Resolver:
    """Resolves paths into the domain model to values carrying all constraints along the path."""

    def __init__(self, specs: Specifications) -> None:
        self._specs = specs

    def find_value_by_path(
        self,
        path: list[Identifier],
        definition: DataElement,
        value_only: bool = False,
        parent_constraints: list | None = None,
    ):
        if not path or definition is None:
            return None
        parent_constraints = parent_constraints or []

        candidates = []
        if definition.value is not None:
            candidates.append(self.merge_constraints_to_child(parent_constraints, definition.value, True))
        if not value_only:
            candidates.extend(self.merge_constraints_to_child(parent_constraints, f) for f in definition.fields)

        head = path[0]
        if head.is_value_keyword and definition.value is not None:
            value = candidates[0]
        else:
            value = self.find_value_by_identifier(head, candidates)

        if value is None and head.is_concept_keyword:
            if len(path) > 1:
                raise UnsupportedShape(f"Mapping sub-fields of {head.name} is not supported")
            return self._concept_value(definition)

        # the identifier may have been replaced by an includes type
        if value is None:
            for itc in ConstraintsFilter(parent_constraints).includes_type:
                if len(itc.path) == 1 and itc.is_a == head:
                    found = self.find_value_by_identifier(itc.path[0], candidates)
                    if found is not None:
                        value = IdentifiableValue(
                            identifier=itc.is_a,
                            card=itc.card,
                            constraints=found.constraints,
                            derived_from_includes_type=True,
                        )

        if value is None or len(path) == 1:
            return value

        child_def = self._specs.find_by_identifier(choice_friendly_effective_identifier(value))
        if child_def is None:
            return None

        if child_def.value is not None:
            sub_value = self.find_value_by_path(path[1:], child_def, True, value.constraints)
            if sub_value is not None:
                return self.merge_constraints_to_child(value.constraints, sub_value, True)

        return self.find_value_by_path(path[1:], child_def, False, value.constraints)

    def _concept_value(self, definition: DataElement) -> IdentifiableValue:
        value = IdentifiableValue(identifier=CONCEPT, card=Cardinality(min=1, max=1))
        if len(definition.concepts) == 1:
            value = value.with_constraint(CodeConstraint(code=definition.concepts[0]))
        elif len(definition.concepts) > 1:
            value = value.model_copy(update={"card": Cardinality(min=len(definition.concepts), max=None)})
            for concept in definition.concepts:
                value = value.with_constraint(IncludesCodeConstraint(code=concept))
        return value

    def find_value_by_identifier(self, identifier: Identifier, values: list):
        for value in values:
            if isinstance(value, IdentifiableValue) and identifier in value.possible_identifiers:
                if identifier not in (value.identifier, value.effective_identifier):
                    return self._includes_type_value(identifier, value)
                return value

            if isinstance(value, ChoiceValue):
                option = self.find_value_by_identifier(identifier, value.options)
                if option is None:
                    continue

                # options take the choice's cardinality, optional if another option may be chosen
                card = value.effective_card
                type_constrained = any(c.is_a == identifier for c in value.constraints_filter.own.type)
                if len(value.options) > 1 and not type_constrained:
                    card = Cardinality(min=0, max=card.max)
                option = option.model_copy(update={"card": card})
                return self.merge_constraints_to_child(value.constraints, option)
        return None

    def _includes_type_value(self, identifier: Identifier, value: IdentifiableValue):
        for itc in value.constraints_filter.includes_type:
            if not itc.path and itc.is_a == identifier:
                constraints = [
                    c
                    for c in value.constraints
                    if not c.path and not isinstance(c, (IncludesTypeConstraint, TypeConstraint, CardConstraint))
                ]
                return IdentifiableValue(
                    identifier=itc.is_a,
                    card=itc.card,
                    constraints=constraints,
                    derived_from_includes_type=True,
                )
        return value

    def merge_constraints_to_child(self, parent_constraints: list, child, child_is_value: bool = False):
        """Move the parent's constraints addressing `child` onto it.

        Parent constraints win over child constraints of the same kind at the
        same path.
        """
        child_identifier = getattr(child, "identifier", None)
        effective_identifier = choice_friendly_effective_identifier(child)

        constraints = []
        for cst in parent_constraints:
            if child_is_value and not cst.path and cst.on_value:
                constraints.append(cst.model_copy(update={"on_value": False}))
            elif cst.path and cst.path[0] in (child_identifier, effective_identifier):
                constraints.append(cst.with_path(cst.path[1:]))

        constraints = [
            c for c in constraints if not (isinstance(c, TypeConstraint) and c.is_a == effective_identifier)
        ]
        if not constraints:
            return child

        for cst in child.constraints:
            siblings = ConstraintsFilter(constraints).with_path(cst.path)
            if any(type(c) is type(cst) for c in siblings):
                continue
            constraints.append(cst)
        return child.with_constraints(constraints)

    def aggregate_effective_card(self, identifier: Identifier, path: list[Identifier]) -> Cardinality | None:
        definition = self._specs.find_by_identifier(identifier)
        cards = []
        for i in range(len(path)):
            value = self.find_value_by_path(path[: i + 1], definition)
            if value is None:
                return None
            cards.append(value.effective_card)
        return aggregate_cardinality(*cards)

    def recursive_based_ons(self, identifier: Identifier, processed: list[Identifier] | None = None) -> list[Identifier]:
        processed = processed if processed is not None else []
        if identifier.is_primitive or identifier in processed:
            return processed

        definition = self._specs.find_by_identifier(identifier)
        if definition is None:
            logger.error("Cannot resolve element definition for %s", identifier)
            return processed

        processed.append(identifier)
        for based_on in definition.based_on:
            self.recursive_based_ons(based_on, processed)
        return processed

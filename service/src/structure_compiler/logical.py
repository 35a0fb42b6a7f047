from __future__ import annotations

import logging

from . import narrative
from .constraint_applier import CODEABLE_CONCEPT, CODING, LogicalConstraintApplier
from .consts import ELEMENT_BASE_DEFINITION
from .context import CompilerContext
from .data.base_definitions import BaseDefinitions
from .data.specifications import Specifications
from .model.data_element import DataElement
from .model.values import ChoiceValue, IdentifiableValue, TBDValue, choice_friendly_effective_identifier
from .naming import capitalize, first_line, fhir_id, fhir_url, lower_first, model_identifier_from_url, short_id
from .tree.element import ElementDefinition
from .tree.structure import StructureDefinition

logger = logging.getLogger(__name__)

BLANK_ELEMENT = "intentionallyBlank"
BLANK_DESCRIPTION = "Workaround for limitation in IG publisher: StructureDefinitions must have at least one field"


def _set_flags(el: ElementDefinition) -> None:
    el.must_support = False
    el.is_modifier = False
    el.is_summary = False


class ModelBuilder:
    """Exports data elements as logical models, one element per value and field."""

    def __init__(self, context: CompilerContext, specs: Specifications, base_definitions: BaseDefinitions) -> None:
        self.context = context
        self.specs = specs
        self.base_definitions = base_definitions
        self.applier = LogicalConstraintApplier(context, specs, self.resolve)

        self._models: dict[str, StructureDefinition] = {}
        self._base: dict[str, StructureDefinition | None] = {}

    @property
    def models(self) -> list[StructureDefinition]:
        return list(self._models.values())

    def build_all(self) -> None:
        for definition in self.specs.data_elements:
            # FHIR's own datatypes stand in for these
            if definition.identifier in (CODEABLE_CONCEPT, CODING):
                continue
            try:
                self.export_model(definition)
            except Exception:
                logger.exception("unexpected error exporting %s to a logical model", definition.identifier)

    def export_model(self, definition: DataElement) -> StructureDefinition:
        config = self.context.config
        identifier = definition.identifier
        model_id = fhir_id(identifier, "model")
        if model_id in self._models:
            return self._models[model_id]

        logger.debug("exporting logical model %s", model_id)
        model = StructureDefinition(type=model_id, slicing_ids=self.context.slicing_ids)
        # registered first, models may refer to themselves
        self._models[model_id] = model

        description = self.applier.description(identifier)
        title = f"{config.project_shorthand} {identifier.name} Logical Model"
        model.id = model_id
        model.text = narrative.render(title, description)
        model.url = fhir_url(identifier, config.fhir_url, "model")
        model.identifier = [{"system": config.project_url, "value": identifier.fqn}]
        model.name = f"{identifier.name}Model"
        model.title = title
        model.status = "draft"
        model.date = config.publish_date
        model.publisher = config.publisher
        model.contact = config.contact_json or None
        model.description = description
        model.fhir_version = config.fhir_version
        model.kind = "logical"
        model.abstract = False
        model.base_definition = ELEMENT_BASE_DEFINITION
        model.derivation = "specialization"
        keywords = [c.to_coding() for c in definition.concepts]
        if keywords:
            model.keyword = keywords

        root = model.root
        _set_flags(root)
        if description:
            root.short = first_line(description)
        else:
            root.short = root.definition = identifier.name

        if definition.value is not None:
            self.add_element(model, definition.value, is_value=True)
        for field in definition.fields:
            self.add_element(model, field)

        if len(model.elements) == 1:
            blank = model.new_element(BLANK_ELEMENT)
            blank.short = blank.definition = BLANK_DESCRIPTION
            blank.min = 0
            blank.max = "0"
            _set_flags(blank)
        return model

    def add_element(self, model: StructureDefinition, value, is_value: bool = False) -> ElementDefinition | None:
        if isinstance(value, TBDValue):
            return None

        if is_value:
            el = model.new_element("value[x]" if isinstance(value, ChoiceValue) else "value")
            parent_description = lower_first(model.description) if model.description else "the logical model instance"
            value_name = capitalize(self.value_name(value))
            el.short = f"{value_name} representing {first_line(parent_description)}"
            el.definition = f"{value_name} representing {parent_description}"
            el.alias = self.aliases(value) or None
        else:
            identifier = choice_friendly_effective_identifier(value)
            if identifier is None:
                # a choice field of several types is named after its options
                names = [short_id(o.effective_identifier, logical=True) for o in self._options(value)]
                el = model.new_element(lower_first("Or".join(capitalize(n) for n in names)) + "[x]")
                el.short = el.definition = f"Choice of {self.value_name(value)}"
                el.alias = self.aliases(value) or None
            else:
                el = model.new_element(short_id(identifier, logical=True))
                el.alias = self.aliases(value, exclude=short_id(identifier, logical=True)) or None
                description = self.applier.description(identifier, identifier.name)
                el.short = first_line(description)
                el.definition = description

        el.type = self.applier.to_type_array(value)
        card = value.effective_card
        el.modify_card(card.min, card.max)
        if isinstance(value, IdentifiableValue):
            el.code = self.applier.concepts(value.effective_identifier) or None
        _set_flags(el)

        self.applier.apply_constraints(value, el)
        return el

    @staticmethod
    def _options(value: ChoiceValue) -> list[IdentifiableValue]:
        return [o for o in value.aggregate_options if isinstance(o, IdentifiableValue)]

    def value_name(self, value) -> str:
        if isinstance(value, ChoiceValue):
            return " or ".join(o.effective_identifier.name for o in self._options(value))
        return value.effective_identifier.name

    def aliases(self, value, exclude: str | None = None) -> list[str]:
        aliases = []
        if isinstance(value, ChoiceValue):
            for option in value.aggregate_options:
                for alias in self.aliases(option):
                    if alias not in aliases:
                        aliases.append(alias)
        elif isinstance(value, IdentifiableValue):
            aliases.append(short_id(value.identifier, logical=True))
            aliases.extend(short_id(c.is_a, logical=True) for c in value.constraints_filter.own.type)
        return [a for a in aliases if a != exclude]

    def resolve(self, type_: dict) -> StructureDefinition | None:
        """Structure behind a type, exporting local models on demand."""
        code = type_.get("code")
        if not code:
            return None
        identifier = model_identifier_from_url(code, self.context.config.fhir_url)
        if identifier is not None:
            definition = self.specs.find_by_identifier(identifier)
            return self.export_model(definition) if definition is not None else None

        if code not in self._base:
            data = self.base_definitions.find(code)
            self._base[code] = StructureDefinition.from_json(data) if data is not None else None
        return self._base[code]

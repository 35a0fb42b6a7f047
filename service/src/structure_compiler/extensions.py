from __future__ import annotations

import copy
import logging

from . import narrative
from .consts import (
    ELEMENT_CONSTRAINTS,
    ELEMENT_ID_DEFINITION,
    ELEMENT_ID_SHORT,
    EXTENSION_BASE_DEFINITION,
    EXTENSION_URL_COMMENT,
    EXTENSION_URL_DEFINITION,
    EXTENSION_URL_SHORT,
    EXTENSION_VALUE_DEFINITION,
    EXTENSION_VALUE_SHORT,
    EXTENSION_VALUE_TYPES,
    MODIFIER_REASON,
    PRIMITIVE_TYPE_CODES,
    RIM_MAPPING,
    UNKNOWN_NAMESPACE,
    VALUE_SUPPORTED_TYPES,
)
from .constraint_applier import ConstraintApplier
from .context import CompilerContext
from .data.base_definitions import BaseDefinitions
from .data.specifications import Specifications
from .errors import DefinitionNotFound
from .model.cardinality import Cardinality
from .model.constraints import CardConstraint
from .model.data_element import DataElement
from .model.diagnostic import DiagnosticKind
from .model.identifier import Identifier
from .model.values import ChoiceValue, IdentifiableValue, TBDValue
from .naming import capitalize, fhir_id, fhir_url, short_id
from .tree.element import ElementDefinition
from .tree.structure import StructureDefinition

logger = logging.getLogger(__name__)

ROOT_ID = "Extension"


def primitive_code(identifier: Identifier) -> str:
    codes = PRIMITIVE_TYPE_CODES.get(identifier.name)
    return codes[0] if codes else identifier.name


class ExtensionSynthesizer:
    """Builds extension definitions for data the base resources cannot carry.

    Extensions are memoized per identifier in the compiler context. The memo
    entry is made before the elements are built, so mutually referencing
    definitions resolve to the same (possibly unfinished) extension.
    """

    def __init__(
        self,
        context: CompilerContext,
        specs: Specifications,
        base_definitions: BaseDefinitions,
        applier: ConstraintApplier,
    ) -> None:
        self.context = context
        self.specs = specs
        self.base_definitions = base_definitions
        self.applier = applier
        applier.extensions = self

    @property
    def extensions(self) -> list[StructureDefinition]:
        return list(self.context.extensions.values())

    def lookup_extension(self, identifier: Identifier) -> StructureDefinition:
        extension = self.context.extensions.get(identifier)
        if extension is not None:
            return extension
        return self.create_extension(identifier)

    def create_extension(self, identifier: Identifier) -> StructureDefinition:
        definition = self.specs.find_by_identifier(identifier)
        if definition is None and identifier.is_primitive:
            definition = self._primitive_definition(identifier)
        if definition is None:
            raise DefinitionNotFound(f"Cannot create extension, no data element '{identifier}'")

        logger.debug("creating extension for %s", identifier)
        extension = self._new_extension(definition)
        self.context.extensions[identifier] = extension
        self.push_definition_elements(extension, ROOT_ID, "", definition)
        return extension

    def _primitive_definition(self, identifier: Identifier) -> DataElement:
        return DataElement(
            identifier=identifier,
            description=f"The {identifier.name} that represents the value of the element to which it is applied.",
            value=IdentifiableValue(identifier=identifier, card=Cardinality(min=1, max=1)),
        )

    def _new_extension(self, definition: DataElement) -> StructureDefinition:
        config = self.context.config
        identifier = definition.identifier
        title = f"{config.project_shorthand} {identifier.name} Extension"

        extension = StructureDefinition(slicing_ids=self.context.slicing_ids)
        extension.mapping = self.base_definitions.extension_template().get("mapping")
        extension.id = fhir_id(identifier, "extension")
        extension.url = fhir_url(identifier, config.fhir_url, "extension")
        if not identifier.is_primitive:
            extension.identifier = [{"system": config.project_url, "value": identifier.fqn}]
        extension.name = f"{identifier.name}Extension"
        extension.title = title
        extension.status = "draft"
        extension.date = config.publish_date
        extension.publisher = config.publisher
        extension.contact = config.contact_json or None
        extension.text = narrative.render(title, definition.description)
        extension.fhir_version = config.fhir_version
        extension.kind = "complex-type"
        extension.abstract = False
        extension.context = [{"type": "element", "expression": "Element"}]
        extension.type = "Extension"
        extension.base_definition = EXTENSION_BASE_DEFINITION
        extension.derivation = "constraint"
        extension.description = definition.description
        return extension

    # --- elements -----------------------------------------------------

    @staticmethod
    def _push(extension: StructureDefinition, el_id: str, snapshot: dict, differential: dict | None = None):
        """Add an element, only the `differential` properties end up in the diff."""
        el = ElementDefinition(el_id, **snapshot)
        el.capture_original()
        for prop, value in (differential or {}).items():
            setattr(el, prop, value)
        return extension.add_element(el)

    def push_definition_elements(
        self,
        extension: StructureDefinition,
        base_id: str,
        base_expression: str,
        definition: DataElement,
        card: Cardinality = Cardinality(min=0, max=None),
        description: str | None = None,
    ) -> None:
        self._push_base_element(extension, base_id, definition, card, description)
        self._push_id_element(extension, base_id)

        type_code, value = self._simple_value(definition)
        if type_code is None:
            self._push_sliced_extensions_element(extension, base_id)
            for field in definition.value_and_fields:
                self._push_field(extension, base_id, base_expression, definition, field)
            self._push_url_element(extension, base_id, definition)
            self._push_no_value_element(extension, base_id)
        else:
            self._push_no_extensions_element(extension, base_id)
            self._push_url_element(extension, base_id, definition)
            self._push_value_element(extension, base_id, type_code, value)

    def _push_base_element(self, extension, base_id, definition, card, description=None) -> None:
        identifier = definition.identifier
        snapshot = {}
        if "." not in base_id:
            snapshot["condition"] = ["ele-1"]
            snapshot["constraint"] = copy.deepcopy(ELEMENT_CONSTRAINTS)
            snapshot["base"] = {"path": "Extension", "min": 0, "max": "*"}
        else:
            snapshot["base"] = {"path": "Extension.extension", "min": 0, "max": "*"}
            snapshot["type"] = [{"code": "Extension"}]

        short = identifier.name if identifier.is_primitive else extension.title
        differential = {
            "short": short,
            "definition": description or definition.description or identifier.name,
            "min": card.min,
            "max": card.max_as_string,
        }
        if "." in base_id:
            differential["slice_name"] = base_id.rsplit(":", 1)[-1]
        self._push(extension, base_id, snapshot, differential)

    def _push_id_element(self, extension, base_id) -> None:
        self._push(
            extension,
            f"{base_id}.id",
            {
                "representation": ["xmlAttr"],
                "short": ELEMENT_ID_SHORT,
                "definition": ELEMENT_ID_DEFINITION,
                "min": 0,
                "max": "1",
                "base": {"path": "Element.id", "min": 0, "max": "1"},
                "type": [{"code": "string"}],
                "mapping": copy.deepcopy(RIM_MAPPING),
            },
        )

    def _extension_list_props(self) -> dict:
        return {
            "short": "Extension",
            "definition": "An Extension",
            "min": 0,
            "max": "*",
            "base": {"path": "Element.extension", "min": 0, "max": "*"},
            "type": [{"code": "Extension"}],
        }

    def _push_no_extensions_element(self, extension, base_id) -> None:
        self._push(extension, f"{base_id}.extension", self._extension_list_props(), {"max": "0"})

    def _push_sliced_extensions_element(self, extension, base_id) -> None:
        el = self._push(extension, f"{base_id}.extension", self._extension_list_props())
        el.slice_it("value", "url")

    def _push_url_element(self, extension, base_id, definition) -> None:
        identifier = definition.identifier
        if "." in base_id:
            url = short_id(identifier)
        else:
            url = fhir_url(identifier, self.context.config.fhir_url, "extension")
        self._push(
            extension,
            f"{base_id}.url",
            {
                "representation": ["xmlAttr"],
                "short": EXTENSION_URL_SHORT,
                "definition": EXTENSION_URL_DEFINITION,
                "comment": EXTENSION_URL_COMMENT,
                "min": 1,
                "max": "1",
                "base": {"path": "Extension.url", "min": 1, "max": "1"},
                "mapping": copy.deepcopy(RIM_MAPPING),
            },
            {"type": [{"code": "uri"}], "fixed": ("Uri", url)},
        )

    def _push_value_element(self, extension, base_id, type_code: str, value) -> None:
        suffix = type_code if type_code == "[x]" else capitalize(type_code)
        card = value.effective_card
        value_el = self._push(
            extension,
            f"{base_id}.value{suffix}",
            {
                "short": EXTENSION_VALUE_SHORT,
                "definition": EXTENSION_VALUE_DEFINITION,
                "max": card.max_as_string,
                "base": {"path": "Extension.value[x]", "min": 0, "max": "1"},
                "mapping": copy.deepcopy(RIM_MAPPING),
            },
            {"min": card.min, "type": []},
        )

        if isinstance(value, ChoiceValue):
            for option in value.aggregate_options:
                type_ = self._type_for_option(option)
                if type_ is None or type_ in value_el.type:
                    continue
                value_el.type.append(type_)
            for option in value.aggregate_options:
                if isinstance(option, IdentifiableValue):
                    self.applier.apply_constraints(option, value_el)
            return

        identifier = value.effective_identifier
        if identifier.is_primitive:
            value_el.type.append({"code": type_code})
        elif type_code == "Reference":
            value_el.type.append({"code": type_code, "targetProfile": [self._profile_url(value.identifier)]})
        else:
            value_el.type.append({"code": type_code, "profile": [self._profile_url(value.identifier)]})
        self.applier.apply_constraints(value, value_el)

    def _push_no_value_element(self, extension, base_id) -> None:
        self._push(
            extension,
            f"{base_id}.value[x]",
            {
                "short": EXTENSION_VALUE_SHORT,
                "definition": EXTENSION_VALUE_DEFINITION,
                "min": 0,
                "max": "1",
                "base": {"path": "Extension.value[x]", "min": 0, "max": "1"},
                "type": [{"code": code} for code in EXTENSION_VALUE_TYPES],
                "mapping": copy.deepcopy(RIM_MAPPING),
            },
            {"max": "0"},
        )

    # --- fields -------------------------------------------------------

    def _push_field(self, extension, base_id, base_expression, definition, field) -> None:
        if isinstance(field, TBDValue):
            return
        if isinstance(field, IdentifiableValue):
            self._push_sub_extension(extension, base_id, base_expression, definition, field)
            return
        if not isinstance(field, ChoiceValue):
            self.context.report(
                extension.id, DiagnosticKind.UNSUPPORTED_SHAPE, f"Unsupported field value type {type(field).__name__}"
            )
            return

        # options share the level of the other fields, an invariant keeps them exclusive
        expressions = []
        for option in field.aggregate_options:
            if not isinstance(option, IdentifiableValue):
                continue
            optional = option.with_constraint(CardConstraint(card=Cardinality(min=0, max=option.effective_card.max)))
            if self._push_sub_extension(extension, base_id, base_expression, definition, optional):
                expressions.append(self._expression(base_expression, option.identifier))

        if len(expressions) > 1:
            root = extension.root
            invariants = root.constraint or []
            number = 1 + len([c for c in invariants if c["key"].startswith("choice-")])
            comparison = "<= 1" if field.effective_card.min == 0 else "== 1"
            root.constraint = [
                *invariants,
                {
                    "key": f"choice-{number}",
                    "severity": "error",
                    "human": f"{extension.id} SHALL have either {' or '.join(expressions)}",
                    "expression": f"( {' | '.join(e + '.url' for e in expressions)} ).distinct().count() {comparison}",
                },
            ]

    @staticmethod
    def _expression(base_expression: str, identifier: Identifier) -> str:
        expression = f"extension('{short_id(identifier)}')"
        return f"{base_expression}.{expression}" if base_expression else expression

    def _push_sub_extension(self, extension, base_id, base_expression, definition, field: IdentifiableValue) -> bool:
        card = field.effective_card
        identifier = field.identifier
        # a zeroed out sub-extension is simply not there
        if card.is_zeroed_out:
            return False
        if identifier.namespace == UNKNOWN_NAMESPACE:
            self.context.report(
                extension.id, DiagnosticKind.UNSUPPORTED_SHAPE, f"Unable to establish namespace for {identifier.name}"
            )
            return False

        field_base_id = f"{base_id}.extension:{short_id(identifier)}"
        if identifier.is_primitive:
            self.push_definition_elements(
                extension,
                field_base_id,
                self._expression(base_expression, identifier),
                self._primitive_definition(identifier),
                card,
                description=definition.description,
            )
            self.applier.apply_constraints(field, extension.find_element(field_base_id), is_extension=True)
            return True

        if self.specs.find_by_identifier(identifier) is None:
            self.context.report(
                extension.id, DiagnosticKind.INVALID_SOURCE_PATH, f"Cannot resolve data element {identifier}"
            )
            return False

        sub_extension = self.lookup_extension(identifier)
        is_modifier = "modifier" in identifier.name.lower()
        differential = {
            "slice_name": short_id(identifier),
            "short": sub_extension.root.short if sub_extension.root is not None else identifier.name,
            "definition": sub_extension.description or identifier.name,
            "min": card.min,
            "max": card.max_as_string,
            "type": [{"code": "Extension", "profile": [sub_extension.url]}],
        }
        if is_modifier:
            differential["is_modifier"] = True
            differential["is_modifier_reason"] = MODIFIER_REASON
        el = self._push(
            extension,
            field_base_id,
            {
                "base": {"path": "Element.extension", "min": 0, "max": "*"},
                "is_modifier": False,
                "mapping": copy.deepcopy(RIM_MAPPING),
            },
            differential,
        )
        self.applier.apply_constraints(field, el, is_extension=True)
        return True

    # --- classification -----------------------------------------------

    @staticmethod
    def _value_type(target_item: str) -> str:
        return target_item if target_item in VALUE_SUPPORTED_TYPES else "Reference"

    def _profile_url(self, identifier: Identifier) -> str:
        return fhir_url(identifier, self.context.config.fhir_url)

    def _simple_value(self, definition: DataElement) -> tuple[str | None, object]:
        """Type code and value of a simple extension, `(None, None)` for a complex one."""
        mapping = self.specs.find_mapping(definition.identifier)
        if mapping is not None:
            value = IdentifiableValue(identifier=mapping.identifier, card=Cardinality(min=1, max=1))
            return self._value_type(mapping.target_item), value

        value = definition.value
        if value is None or definition.fields:
            return None, None
        card = value.effective_card
        if card.max is None or card.max > 1:
            return None, None

        if isinstance(value, ChoiceValue):
            return ("[x]", value) if self._choice_supports_value_x(value) else (None, None)
        if isinstance(value, IdentifiableValue):
            identifier = value.effective_identifier
            if identifier.is_primitive:
                return primitive_code(identifier), value
            value_mapping = self.specs.find_mapping(identifier)
            if value_mapping is not None:
                return self._value_type(value_mapping.target_item), value
        return None, None

    def _choice_supports_value_x(self, choice: ChoiceValue) -> bool:
        # value[x] cannot hold options that need an extension themselves
        for option in choice.aggregate_options:
            if isinstance(option, TBDValue):
                continue
            if not isinstance(option, IdentifiableValue):
                return False
            if not option.identifier.is_primitive and self.specs.find_mapping(option.identifier) is None:
                return False
        return True

    def _type_for_option(self, option) -> dict | None:
        if not isinstance(option, IdentifiableValue):
            return None
        if option.identifier.is_primitive:
            return {"code": primitive_code(option.identifier)}
        mapping = self.specs.find_mapping(option.identifier)
        if mapping is None:
            return None
        code = self._value_type(mapping.target_item)
        if code == "Reference":
            return {"code": code, "targetProfile": [self._profile_url(mapping.identifier)]}
        return {"code": code, "profile": [self._profile_url(mapping.identifier)]}

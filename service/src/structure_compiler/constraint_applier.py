"""Application of domain model constraints onto element trees.

`ConstraintApplier` works on profiles and extensions: it matches source
values against the allowed types of a target element and applies bindings,
fixed values and slices. `LogicalConstraintApplier` does the same for
logical models, which have no structural inheritance and therefore inline
nested structure instead of profiling it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from .consts import PRIMITIVE_TYPE_CODES
from .context import CompilerContext
from .data.base_definitions import BaseDefinitions
from .data.specifications import Specifications
from .model.cardinality import Cardinality, aggregate_cardinality
from .model.constraints import BindingStrength, Concept, IncludesTypeConstraint
from .model.diagnostic import DiagnosticKind
from .model.identifier import Identifier
from .model.mapping import ElementMapping, FieldToFieldRule
from .model.values import ChoiceValue, IdentifiableValue, TBDValue, choice_friendly_effective_identifier
from .naming import first_line, fhir_id, fhir_url, short_id
from .resolver import CONCEPT, Resolver
from .tree.element import ElementDefinition
from .tree.structure import StructureDefinition

logger = logging.getLogger(__name__)

# markers kept on type dicts while a profile is built, removed before the diff is taken
SELECTED = "_selected"
ORIGINAL_PROFILES = "_originalProfiles"
ORIGINAL_TARGET_PROFILES = "_originalTargetProfiles"
TYPE_MARKERS = (SELECTED, ORIGINAL_PROFILES, ORIGINAL_TARGET_PROFILES)

VALUE = Identifier(name="Value")
CODEABLE_CONCEPT = Identifier(namespace="shr.core", name="CodeableConcept")
CODING = Identifier(namespace="shr.core", name="Coding")
CODISH_TYPES = ("code", "Coding", "CodeableConcept", "Quantity")


def is_selected(type_: dict | None) -> bool:
    return bool(type_ and type_.get(SELECTED))


def mark_selected(*types: dict) -> None:
    for type_ in types:
        type_[SELECTED] = True


def strip_type_markers(structure: StructureDefinition) -> None:
    for el in structure.elements:
        for type_ in el.type or []:
            for marker in TYPE_MARKERS:
                type_.pop(marker, None)


def allowed_binding_strength_change(current: str | None, new: str) -> bool:
    """A binding may only be kept or made stronger."""
    order = [str(s) for s in BindingStrength]
    if current not in order:
        return True
    return order.index(str(new)) <= order.index(current)


def push_shr_mapping(el: ElementDefinition, path: list[Identifier]) -> None:
    entry = {"identity": "shr", "map": ".".join(f"<{i.fqn}>" for i in path)}
    mappings = el.mapping or []
    if entry not in mappings:
        el.mapping = [*mappings, entry]


def description_of(specs: Specifications, identifier: Identifier | None, default: str | None = None) -> str | None:
    definition = specs.find_by_identifier(identifier) if identifier is not None else None
    description = definition.description.strip() if definition is not None and definition.description else None
    if not description and default:
        description = default.strip()
    return description


def _as_list(value) -> list:
    if value is None:
        return []
    return [value] if isinstance(value, str) else list(value)


def _overlaps(urls: list[str], others: list[str]) -> bool:
    return any(url in others for url in urls)


class ConstraintApplier:
    """Applies resolved source values to profile and extension elements.

    Profile and extension lookups are attached after construction by the
    builders (`profiles`, `extensions`), since those in turn use the applier.
    """

    def __init__(
        self,
        context: CompilerContext,
        specs: Specifications,
        base_definitions: BaseDefinitions,
        resolver: Resolver | None = None,
    ) -> None:
        self.context = context
        self.specs = specs
        self.base_definitions = base_definitions
        self.resolver = resolver or Resolver(specs)
        self.profiles = None
        self.extensions = None
        self._resolved: dict[str, StructureDefinition | None] = {}

    # --- lookups ------------------------------------------------------

    def resolve(self, type_: dict) -> StructureDefinition | None:
        for url in _as_list(type_.get("profile")):
            structure = self.context.find_extension_by_url(url)
            if structure is None and self.profiles is not None:
                structure = self.profiles.profile_by_url(url)
            if structure is None:
                structure = self.base_structure(url)
            if structure is not None:
                return structure
        return self.base_structure(type_.get("code"))

    def base_structure(self, key: str | None) -> StructureDefinition | None:
        if not key:
            return None
        if key not in self._resolved:
            data = self.base_definitions.find(key)
            self._resolved[key] = StructureDefinition.from_json(data) if data is not None else None
        return self._resolved[key]

    def is_custom_profile(self, structure: StructureDefinition | None) -> bool:
        return structure is not None and bool(structure.url) and structure.url.startswith(self.context.config.fhir_url)

    def lookup_profile(self, identifier: Identifier) -> StructureDefinition | None:
        if self.profiles is None:
            return None
        return self.profiles.lookup_profile(identifier)

    def description(self, identifier: Identifier | None, default: str | None = None) -> str | None:
        return description_of(self.specs, identifier, default)

    def short_description(self, identifier: Identifier) -> str:
        short = first_line(self.description(identifier))
        return f"{identifier.name}: {short}" if short else identifier.name

    def _report(self, el: ElementDefinition, kind: DiagnosticKind, message: str) -> None:
        artifact_id = el.structure.id if el.structure is not None else ""
        self.context.report(artifact_id or "", kind, message, el.id)

    # --- cardinality --------------------------------------------------

    @staticmethod
    def fhir_element_cardinality(el: ElementDefinition) -> Cardinality:
        # any single option of a choice may not be chosen at all
        min_ = 0 if len(el.type or []) > 1 else (el.min or 0)
        return Cardinality.from_fhir(min_, el.max)

    def set_cardinality(self, card: Cardinality, el: ElementDefinition) -> bool:
        target = self.fhir_element_cardinality(el)
        if not card.fits_within(target):
            self._report(
                el,
                DiagnosticKind.CARDINALITY_VIOLATION,
                f"Cannot constrain cardinality of {el.id} from {target} to {card}",
            )
            return False
        if card == target:
            return True

        # the min of a required choice is not relaxed by constraining one of its options
        min_ = max(card.min, el.min or 0)
        if card.max is not None and min_ > card.max:
            self._report(
                el,
                DiagnosticKind.CARDINALITY_VIOLATION,
                f"Cannot constrain cardinality of required element {el.id} to {card}",
            )
            return False

        if Cardinality(min=min_, max=card.max) != Cardinality.from_fhir(el.min, el.max):
            if el.base is None:
                el.reset_base()
            el.modify_card(min_, card.max)
        return True

    def aggregate_element_cardinality(self, el: ElementDefinition) -> Cardinality | None:
        cards = []
        current = el
        while current is not None and current.parent() is not None:
            cards.insert(0, Cardinality.from_fhir(current.min, current.max))
            current = current.parent()
        return aggregate_cardinality(*cards)

    def apply_aggregate_cardinality(self, card: Cardinality, el: ElementDefinition) -> bool:
        if el.id.count(".") <= 1:
            return self.set_cardinality(card, el)

        target = self.aggregate_element_cardinality(el)
        if target is None or card == target:
            return True
        if not card.fits_within(target):
            self._report(
                el,
                DiagnosticKind.CARDINALITY_VIOLATION,
                f"Cannot constrain aggregate cardinality of {el.id} from {target} to {card}",
            )
            return False
        if card.is_zeroed_out:
            if el.base is None:
                el.reset_base()
            el.modify_card(0, 0)
            return True

        self._report(
            el,
            DiagnosticKind.UNSUPPORTED_SHAPE,
            f"Cannot constrain cardinality of {el.id} to {card} because cardinality placement is ambiguous, "
            "explicitly constrain parent elements in the target path",
        )
        return False

    # --- type matching ------------------------------------------------

    def find_matching_type(self, source_value, el: ElementDefinition) -> dict | None:
        """Find the type of `el` the mapped source can be placed on and point it at the source's profile."""
        identifier = choice_friendly_effective_identifier(source_value)
        mapping = self.specs.find_mapping(identifier) if identifier is not None else None
        if mapping is None:
            return None
        source_profile = self.lookup_profile(identifier)
        if source_profile is None:
            return None

        allowable_types = self.base_definitions.type_hierarchy(mapping.target_item)
        profile_urls = self.base_definitions.profile_urls(mapping.target_item)
        profile_urls += [
            fhir_url(b, self.context.config.fhir_url) for b in self.resolver.recursive_based_ons(identifier)
        ]
        custom = self.is_custom_profile(source_profile)
        from_includes_type = getattr(source_value, "derived_from_includes_type", False)

        types = el.type or []
        for index, type_ in enumerate(types):
            selected = is_selected(type_)
            original_profiles = _as_list(type_.get(ORIGINAL_PROFILES) if selected else type_.get("profile"))
            original_target_profiles = _as_list(
                type_.get(ORIGINAL_TARGET_PROFILES) if selected else type_.get("targetProfile")
            )

            if type_.get("code") in allowable_types or _overlaps(profile_urls, original_profiles):
                if not selected:
                    if custom or source_profile.id != type_.get("code"):
                        if type_.get("profile"):
                            type_[ORIGINAL_PROFILES] = type_["profile"]
                        type_["profile"] = [source_profile.url]
                    mark_selected(type_)
                    return type_

                if not custom:
                    # a profile-less mapping widens the type again
                    type_.pop("profile", None)
                    return type_
                if original_profiles and not _overlaps(profile_urls, original_profiles):
                    return type_
                if from_includes_type:
                    type_["profile"] = [source_profile.url]
                elif source_profile.url not in _as_list(type_.get("profile")):
                    added = {"code": type_["code"], "profile": [source_profile.url], SELECTED: True}
                    types.insert(index + 1, added)
                    return added
                return type_

            if type_.get("code") == "Reference" and _overlaps(profile_urls, original_target_profiles):
                if not selected:
                    if type_.get("targetProfile"):
                        type_[ORIGINAL_TARGET_PROFILES] = type_["targetProfile"]
                    type_["targetProfile"] = [source_profile.url]
                    mark_selected(type_)
                elif from_includes_type:
                    type_["targetProfile"] = [source_profile.url]
                elif source_profile.url not in _as_list(type_.get("targetProfile")):
                    added = {"code": "Reference", "targetProfile": [source_profile.url], SELECTED: True}
                    types.insert(index + 1, added)
                    return added
                return type_

        return None

    def _check_mapped_profile(self, source_value, matched_type: dict, el: ElementDefinition) -> bool:
        identifier = choice_friendly_effective_identifier(source_value)
        source_profile = self.lookup_profile(identifier)
        mapped = _as_list(matched_type.get("profile") or matched_type.get("targetProfile"))
        if mapped and source_profile is not None and source_profile.url not in mapped:
            self._report(
                el,
                DiagnosticKind.VALUE_CONFLICT,
                f"Trying to map {source_profile.url} to {matched_type.get('code')} but "
                f"{' | '.join(mapped)} was previously mapped to it",
            )
            return False
        return True

    def process_value_to_field_type(
        self,
        mapping: ElementMapping | None,
        source_path: list[Identifier],
        source_value,
        el: ElementDefinition,
        allow_fallthrough: bool = True,
    ) -> list[list[Identifier]]:
        """Match `source_value` against the types of `el` and apply its constraints.

        Returns the source paths that found a home on the element, empty when
        nothing matched.
        """
        identifier = choice_friendly_effective_identifier(source_value)
        if identifier is None:
            return []
        types = el.type or []

        if identifier.is_primitive:
            codes = (identifier.name, *PRIMITIVE_TYPE_CODES.get(identifier.name, ()))
            matched = [t for t in types if t.get("code") in codes]
            if not matched:
                return []
            mark_selected(*matched)
            self.apply_constraints(source_value, el, source_path=source_path)
            return [list(source_path)]

        if len(types) == 1 and types[0].get("code") == "BackboneElement":
            return [list(source_path)]

        matched_paths = []
        matched_type = self.find_matching_type(source_value, el)
        if matched_type is not None and self._check_mapped_profile(source_value, matched_type, el):
            self.apply_constraints(source_value, el, source_path=source_path)
            matched_paths.append(list(source_path))

        if len(matched_paths) == len(types) or not allow_fallthrough:
            return matched_paths

        definition = self.specs.find_by_identifier(identifier)
        if definition is None or definition.value is None:
            return matched_paths
        if matched_paths and self._has_unmapped_required_fields(mapping, source_path, definition):
            return matched_paths

        value = self._narrow_choice(source_value, definition.value)
        if isinstance(value, IdentifiableValue):
            if getattr(source_value, "derived_from_includes_type", False):
                value = value.model_copy(update={"derived_from_includes_type": True})
            merged = self.resolver.merge_constraints_to_child(source_value.constraints, value, True)
            path = [*source_path, merged.effective_identifier]
            matched_paths.extend(self.process_value_to_field_type(mapping, path, merged, el, False))

        elif isinstance(value, ChoiceValue):
            for option in value.aggregate_options:
                if not isinstance(option, IdentifiableValue):
                    continue
                merged = self.resolver.merge_constraints_to_child(value.constraints, option)
                merged = self.resolver.merge_constraints_to_child(source_value.constraints, merged)
                path = [*source_path, choice_friendly_effective_identifier(merged)]
                found = self.process_value_to_field_type(mapping, path, merged, el, False)
                if found:
                    matched_paths.extend(found)
                    break

        return matched_paths

    @staticmethod
    def _has_rule(mapping: ElementMapping | None, path: list[Identifier]) -> bool:
        if mapping is None:
            return False
        return any(rule.source_path == path for rule in mapping.source_rules)

    def _has_unmapped_required_fields(self, mapping, source_path, definition) -> bool:
        for field in definition.fields:
            if field.effective_card.min == 0:
                continue
            candidates = [getattr(field, "identifier", None), choice_friendly_effective_identifier(field)]
            if not any(self._has_rule(mapping, [*source_path, c]) for c in candidates if c is not None):
                return True
        return False

    def _narrow_choice(self, source_value, value):
        """Collapse a choice value to the option a type constraint picks."""
        if not isinstance(value, ChoiceValue):
            return value

        type_constraints = [c for c in source_value.constraints_filter.type if c.on_value and not c.path]
        type_constraints += value.constraints_filter.own.type.constraints
        if len(type_constraints) != 1:
            return value

        is_a = type_constraints[0].is_a
        options = [o for o in value.aggregate_options if isinstance(o, IdentifiableValue)]
        option = next((o for o in options if o.effective_identifier == is_a), None)
        if option is None:
            based_ons = self.resolver.recursive_based_ons(is_a)
            option = next((o for o in options if o.effective_identifier in based_ons), None)
        if option is None:
            return value

        kept = [c for c in value.constraints if c not in type_constraints]
        return option.with_constraints([*option.constraints, *kept])

    # --- constraints --------------------------------------------------

    def apply_constraints(
        self,
        source_value,
        el: ElementDefinition,
        is_extension: bool = False,
        source_path: list[Identifier] | None = None,
    ) -> None:
        constraints = source_value.constraints_filter
        # own cardinality is handled by the callers
        if len(constraints) == len(constraints.card):
            return

        if el.is_choice:
            el = self._explicit_choice_element(source_value, el)
            if el is None:
                return

        self._apply_value_set(source_value, el)
        self._apply_code(source_value, el)
        self._apply_includes_code(source_value, el)
        self._apply_boolean(source_value, el)
        if is_extension:
            self._apply_includes_type_on_extension(source_value, el)

        if constraints.child.has_constraints:
            self._apply_child_constraints(source_value, el, is_extension, source_path or [])

    def _choice_names(self, identifier: Identifier) -> list[str]:
        if identifier.is_primitive:
            return [identifier.name, *PRIMITIVE_TYPE_CODES.get(identifier.name, ())]
        names = [fhir_id(identifier)]
        mapping = self.specs.find_mapping(identifier)
        if mapping is not None:
            names += self.base_definitions.type_hierarchy(mapping.target_item) or [mapping.target_item]
        return names

    def _explicit_choice_element(self, source_value, el: ElementDefinition) -> ElementDefinition | None:
        identifier = choice_friendly_effective_identifier(source_value)
        if identifier is not None:
            for name in self._choice_names(identifier):
                option = el.choice_option(name)
                if option is not None:
                    for type_ in option.type or []:
                        mark_selected(type_)
                    return option

        self._report(
            el,
            DiagnosticKind.TYPE_MISMATCH,
            f"Cannot make choice element {el.id} explicit, no type matches {identifier}",
        )
        return None

    def _constrainable_element(self, source_value, el: ElementDefinition) -> ElementDefinition:
        """Constraints on an extension go to its value element, when it has one."""
        if el.type_codes != ["Extension"]:
            return el
        value_el = self._extension_value_element(el)
        if value_el is None and el.unfold(self.resolve):
            value_el = self._extension_value_element(el)
        if value_el is not None and value_el.max != "0":
            return value_el
        return el

    @staticmethod
    def _extension_value_element(el: ElementDefinition) -> ElementDefinition | None:
        return next((c for c in el.children() if c.last_segment.startswith("value")), None)

    def _apply_value_set(self, source_value, el: ElementDefinition) -> None:
        vs_constraints = source_value.constraints_filter.own.value_set.constraints
        if not vs_constraints:
            return
        el = self._constrainable_element(source_value, el)
        constraint = vs_constraints[0]
        if constraint.value_set.startswith("urn:tbd"):
            return
        if len(vs_constraints) > 1:
            logger.error("found more than one value set to apply to %s", el.id)

        strength = str(constraint.strength)
        if el.binding:
            current = el.binding.get("strength")
            if not allowed_binding_strength_change(current, strength):
                self._report(
                    el,
                    DiagnosticKind.VALUE_CONFLICT,
                    f"Cannot change binding strength of {el.id} from {current} to {strength}",
                )
                return

            current_vs = el.binding.get("valueSet")
            if current_vs == constraint.value_set:
                if current != strength:
                    el.binding = {**el.binding, "strength": strength}
                return
            if current == BindingStrength.REQUIRED:
                self._report(
                    el,
                    DiagnosticKind.VALUE_CONFLICT,
                    f"Cannot override value set constraint of {el.id} from {current_vs} to {constraint.value_set}",
                )
                return
            if current == BindingStrength.EXTENSIBLE:
                logger.warning(
                    "overriding extensible value set constraint from %s to %s, only allowed when new codes "
                    "do not overlap meaning of old codes",
                    current_vs,
                    constraint.value_set,
                )

        el.bind_to_vs(constraint.value_set, constraint.strength)

    def _apply_code(self, source_value, el: ElementDefinition) -> None:
        code_constraints = source_value.constraints_filter.own.code.constraints
        if not code_constraints:
            return
        el = self._constrainable_element(source_value, el)
        self._fix_code(source_value, el, code_constraints[0].code)
        if len(code_constraints) > 1:
            logger.error("found more than one code to fix on %s", el.id)

    def _fix_code(self, source_value, el: ElementDefinition, concept: Concept) -> None:
        if concept.system == "urn:tbd":
            return
        if el.is_choice:
            el = self._explicit_choice_element(source_value, el)
            if el is None:
                return

        if not el.fix_code(concept):
            codish = any(code in CODISH_TYPES for code in el.type_codes)
            self._report(
                el,
                DiagnosticKind.VALUE_CONFLICT if codish else DiagnosticKind.TYPE_MISMATCH,
                f"Cannot fix code {concept.system}#{concept.code} on {el.id}",
            )

    def _apply_includes_code(self, source_value, el: ElementDefinition) -> None:
        ic_constraints = source_value.constraints_filter.own.includes_code.constraints
        if not ic_constraints:
            return
        if getattr(source_value, "identifier", None) != CONCEPT:
            self._report(
                el,
                DiagnosticKind.TYPE_MISMATCH,
                f"Cannot fix included codes on {el.id} because the source value is not code-like",
            )
            return

        sliced = False
        for constraint in ic_constraints:
            code = constraint.code
            if code.system == "urn:tbd":
                continue
            name = f"Includes_{code.code}"
            slice_el = el.structure.find_element(f"{el.id}:{name}") or el.new_slice(name)
            slice_el.modify_card(1, 1)
            self._fix_code(source_value, self._constrainable_element(source_value, slice_el), code)
            sliced = True

        if not sliced:
            return
        codes = el.type_codes
        if "code" in codes:
            el.slice_it("value", "$this")
        elif "Coding" in codes:
            el.slice_it("value", "system")
            el.slice_it("value", "code")
        elif "CodeableConcept" in codes:
            el.slice_it("value", "coding")

    def _apply_boolean(self, source_value, el: ElementDefinition) -> None:
        bool_constraints = source_value.constraints_filter.own.boolean.constraints
        if not bool_constraints:
            return
        el = self._constrainable_element(source_value, el)
        value = bool_constraints[0].value

        if "boolean" not in el.type_codes:
            self._report(el, DiagnosticKind.TYPE_MISMATCH, f"Cannot fix {el.path} to {value}, it is not a boolean")
            return
        if not el.fix_boolean(value):
            self._report(
                el,
                DiagnosticKind.VALUE_CONFLICT,
                f"Cannot fix {el.path} to {value}, it is already fixed to {el.fixed[1]}",
            )
            return
        if el.max == "1" and len(el.type) > 1:
            el.type = [t for t in el.type if t.get("code") == "boolean"]

    def _apply_includes_type_on_extension(self, source_value, el: ElementDefinition) -> None:
        for constraint in source_value.constraints_filter.own.includes_type:
            name = constraint.is_a.name
            slice_el = el.structure.find_element(f"{el.id}/{name}")
            if slice_el is None:
                slice_el = el.clone()
                slice_el.id = f"{el.id}/{name}"
                slice_el.slice_name = f"{el.slice_name}/{name}" if el.slice_name else name
                slice_el.slicing = None
                el.structure.add_element(slice_el)

            el.slice_it("profile", "valueReference.reference.resolve()")
            slice_el.modify_card(constraint.card.min, constraint.card.max)
            slice_el.short = self.short_description(constraint.is_a)
            slice_el.definition = self.description(constraint.is_a, name)

            value_el = self._constrainable_element(source_value, slice_el)
            if value_el is not slice_el:
                self.find_matching_type(
                    IdentifiableValue(identifier=constraint.is_a, derived_from_includes_type=True), value_el
                )

    def _apply_child_constraints(self, source_value, el, is_extension: bool, source_path) -> None:
        identifier = choice_friendly_effective_identifier(source_value)
        groups: dict[tuple, list] = {}
        for constraint in source_value.constraints_filter.child:
            path = [*constraint.path, VALUE] if constraint.on_value else list(constraint.path)
            groups.setdefault(tuple(path), []).append(constraint)

        for path, constraints in groups.items():
            if is_extension:
                self._apply_extension_child_constraints(source_value, identifier, list(path), constraints, el)
            else:
                self._apply_profile_child_constraints(source_value, identifier, list(path), el, source_path)

    def _apply_profile_child_constraints(self, source_value, identifier, path, el, source_path) -> None:
        friendly = ".".join(i.name for i in [identifier, *path] if i is not None)
        target_sub_path = self.find_target_fhir_path(identifier, path)
        if target_sub_path is None:
            self._report(
                el, DiagnosticKind.UNSUPPORTED_SHAPE, f"Could not determine how to map nested value {friendly} to FHIR"
            )
            return

        definition = self.specs.find_by_identifier(identifier)
        child_value = self.resolver.find_value_by_path(path, definition, False, source_value.constraints)
        if child_value is None:
            self._report(el, DiagnosticKind.INVALID_SOURCE_PATH, f"Cannot resolve source path {friendly}")
            return

        target = el.find_child(target_sub_path, self.resolve) if target_sub_path else el
        if target is None:
            self._report(
                el, DiagnosticKind.INVALID_TARGET_PATH, f"Cannot resolve {target_sub_path} below {el.id} for {friendly}"
            )
            return

        self.set_cardinality(child_value.effective_card, target)
        self.apply_constraints(child_value, target, source_path=[*source_path, *path])

    def find_target_fhir_path(self, root: Identifier | None, path: list[Identifier]) -> str | None:
        """FHIR path a source path below `root` is mapped to, chaining field rules where needed."""
        if not path:
            return ""
        mapping = self.specs.find_mapping(root) if root is not None else None
        if mapping is None:
            return None

        alternatives = [path]
        if path[-1].is_value_keyword:
            owner = path[-2] if len(path) > 1 else root
            definition = self.specs.find_by_identifier(owner)
            value_identifier = choice_friendly_effective_identifier(definition.value) if definition else None
            if value_identifier is not None:
                alternatives.append([*path[:-1], value_identifier])

        for candidate in alternatives:
            for rule in mapping.rules:
                if isinstance(rule, FieldToFieldRule) and rule.source_path == candidate:
                    return rule.target

        # rules for A [B, C] and C [D] together map A [B, C, D]
        for i in range(1, len(path)):
            head = self.find_target_fhir_path(root, path[:-i])
            if head:
                tail = self.find_target_fhir_path(path[-i - 1], path[-i:])
                if tail:
                    return f"{head}.{tail}"
        return None

    # --- extensions ---------------------------------------------------

    def _apply_extension_child_constraints(self, source_value, identifier, path, constraints, el) -> None:
        element = self._element_in_extension([identifier, *path], el)
        if element is None:
            self._report(
                el,
                DiagnosticKind.INVALID_TARGET_PATH,
                f"Failed to resolve path from {el.id} to {'.'.join(i.name for i in path)}",
            )
            return

        last = path[-1]
        if last.is_value_keyword:
            owner = path[-2] if len(path) > 1 else getattr(source_value, "identifier", identifier)
            definition = self.specs.find_by_identifier(owner)
            if definition is None or definition.value is None:
                self._report(el, DiagnosticKind.INVALID_SOURCE_PATH, f"{owner} has no value to constrain")
                return
            child = definition.value
        else:
            child = IdentifiableValue(identifier=last)
        child = child.with_constraints([*child.constraints, *(c.with_path([], on_value=False) for c in constraints)])

        self._apply_type_on_extension(child, element)
        self._apply_value_set(child, element)
        self._apply_code(child, element)
        self._apply_includes_code(child, element)
        self._apply_boolean(child, element)
        if child.constraints_filter.own.includes_type.has_constraints:
            self._report(
                element,
                DiagnosticKind.UNSUPPORTED_SHAPE,
                "Nested includes type constraints are not supported on extensions",
            )

        push_shr_mapping(element, [identifier, *path])

    def _element_in_extension(self, path: list[Identifier], el: ElementDefinition) -> ElementDefinition | None:
        if len(path) <= 1 and (not path or el.last_segment.startswith("value")):
            return el

        if el.structure.find_element(f"{el.id}.id") is None:
            el.unfold(self.resolve)

        value_el = self._extension_value_element(el)
        if value_el is not None and value_el.max == "1":
            found = value_el
        elif len(path) <= 1:
            return el
        else:
            url = fhir_url(path[1], self.context.config.fhir_url, "extension")
            found = next(
                (
                    c
                    for c in el.children(include_slices=True)
                    if c.path == f"{el.path}.extension"
                    and (
                        any(url in _as_list(t.get("profile")) for t in c.type or [])
                        or c.slice_name == short_id(path[1])
                    )
                ),
                None,
            )
        if found is None:
            return None

        if found.type_codes == ["Extension"]:
            return self._element_in_extension(path[1:], found)

        sub_path = self.find_target_fhir_path(path[1], path[2:]) if len(path) > 1 else ""
        if sub_path is None:
            return None
        return found.find_child(sub_path, self.resolve) if sub_path else found

    def _apply_type_on_extension(self, source_value, el: ElementDefinition) -> None:
        if not source_value.constraints_filter.own.type.has_constraints:
            return
        el = self._constrainable_element(source_value, el)
        identifier = choice_friendly_effective_identifier(source_value)
        if identifier is None:
            return
        types = el.type or []

        if identifier.is_primitive:
            codes = (identifier.name, *PRIMITIVE_TYPE_CODES.get(identifier.name, ()))
            mark_selected(*[t for t in types if t.get("code") in codes])
            return
        if len(types) == 1 and types[0].get("code") == "BackboneElement":
            return

        matched_type = self.find_matching_type(source_value, el)
        if matched_type is not None and self._check_mapped_profile(source_value, matched_type, el):
            el.short = self.short_description(identifier)
            el.definition = self.description(identifier, identifier.name)


class LogicalConstraintApplier:
    """Applies constraints to logical model elements.

    Logical models have no inheritance, so a type narrowed below the top
    level turns every ancestor into an inline `BackboneElement`, and an
    includes-type turns the element into a typeless section header with one
    child per included type.
    """

    def __init__(
        self,
        context: CompilerContext,
        specs: Specifications,
        resolve: Callable[[dict], StructureDefinition | None],
    ) -> None:
        self.context = context
        self.specs = specs
        self.resolve = resolve

    def description(self, identifier: Identifier | None, default: str | None = None) -> str | None:
        return description_of(self.specs, identifier, default)

    def concepts(self, identifier: Identifier) -> list[dict]:
        definition = self.specs.find_by_identifier(identifier)
        if definition is None:
            return []
        return [c.model_dump(exclude_none=True) for c in definition.concepts]

    def _report(self, el: ElementDefinition, kind: DiagnosticKind, message: str) -> None:
        self.context.report(el.structure.id or "", kind, message, el.id)

    def to_single_type(self, value) -> dict:
        identifier = value.effective_identifier
        # there is no meaningful difference between CodeableConcept and Coding in a logical model
        if identifier in (CODEABLE_CONCEPT, CODING, CONCEPT):
            return {"code": "Coding"}
        if identifier.is_primitive:
            return {"code": identifier.name}
        url = fhir_url(identifier, self.context.config.fhir_url, "model")
        if value.is_reference:
            return {"code": "Reference", "targetProfile": [url]}
        return {"code": url}

    def to_type_array(self, value) -> list[dict]:
        if isinstance(value, TBDValue):
            return []
        if isinstance(value, ChoiceValue):
            return [self.to_single_type(o) for o in value.aggregate_options if not isinstance(o, TBDValue)]
        return [self.to_single_type(value)]

    @staticmethod
    def shr_path_to_fhir_path(value, path: list[Identifier]) -> str:
        if not path:
            return ""
        fhir_path = ".".join(short_id(i, logical=True) for i in path)

        identifiers = getattr(value, "possible_identifiers", [])
        is_codeable_concept = CODEABLE_CONCEPT in identifiers
        is_coding = CODING in identifiers
        if is_codeable_concept or is_coding or re.search(r"coding|codeableConcept", fhir_path):
            fhir_path = fhir_path.replace("codeableConcept.coding", "coding")
            if is_codeable_concept:
                fhir_path = re.sub(r"^coding\.?", "", fhir_path)
            fhir_path = fhir_path.replace("coding.codeSystemVersion", "coding.version")
            fhir_path = fhir_path.replace("coding.codeSystem", "coding.system")
            fhir_path = fhir_path.replace("coding.displayText", "coding.display")
            if is_codeable_concept or is_coding:
                fhir_path = re.sub(r"^codeSystemVersion", "version", fhir_path)
                fhir_path = re.sub(r"^codeSystem", "system", fhir_path)
                fhir_path = re.sub(r"^displayText", "display", fhir_path)
        return fhir_path

    def apply_constraints(self, value, el: ElementDefinition) -> None:
        # type and includes type first, they build out structure the others may address
        constraints = value.constraints_filter
        for constraint in constraints.type:
            self.apply_nested_type_constraint(value, el, constraint)
        for constraint in constraints.includes_type:
            self.apply_includes_type_constraint(value, el, constraint)

        for constraint in constraints.value_set:
            if constraint.value_set.startswith("urn:tbd"):
                continue
            target = self._target(value, el, constraint)
            if target is not None:
                target.bind_to_vs(constraint.value_set, constraint.strength)
        for constraint in constraints.code:
            target = self._target(value, el, constraint)
            if target is not None and not target.fix_code(constraint.code):
                self._report(target, DiagnosticKind.TYPE_MISMATCH, f"Cannot fix code {constraint.code.code} on {target.id}")
        for constraint in constraints.includes_code:
            self.apply_includes_code_invariant(value, el, constraint)
        for constraint in constraints.boolean:
            target = self._target(value, el, constraint)
            if target is not None and not target.fix_boolean(constraint.value):
                self._report(target, DiagnosticKind.TYPE_MISMATCH, f"Cannot fix {target.id} to {constraint.value}")
        for constraint in constraints.card:
            target = self._target(value, el, constraint)
            if target is not None:
                target.modify_card(constraint.card.min, constraint.card.max)

        if isinstance(value, ChoiceValue):
            self._apply_option_constraints(value, el)

    def _apply_option_constraints(self, value: ChoiceValue, el: ElementDefinition) -> None:
        options = [o for o in value.aggregate_options if not isinstance(o, TBDValue) and o.constraints]
        if options:
            el.slice_it("type", "$this")
        for option in options:
            if option.constraints_filter.includes_type.has_constraints:
                # a choice cannot hold a section header
                option = option.with_constraints(
                    [c for c in option.constraints if not isinstance(c, IncludesTypeConstraint)]
                )
            identifier = option.effective_identifier
            slice_el = el.new_slice(identifier.name, self.to_single_type(option))
            description = self.description(identifier, identifier.name)
            slice_el.short = first_line(description)
            slice_el.definition = description
            self.apply_constraints(option, slice_el)

    def _target(self, value, el: ElementDefinition, constraint) -> ElementDefinition | None:
        fhir_path = self.shr_path_to_fhir_path(value, constraint.path)
        if not fhir_path:
            return el
        target = el.find_child(fhir_path, self.resolve)
        if target is None:
            self._report(el, DiagnosticKind.INVALID_TARGET_PATH, f"Cannot resolve {fhir_path} below {el.id}")
        return target

    def _element_path(self, value, constraint) -> list[str]:
        fhir_path = self.shr_path_to_fhir_path(value, constraint.path)
        segments = fhir_path.split(".") if fhir_path else []
        if constraint.on_value:
            owner = constraint.path[-1] if constraint.path else choice_friendly_effective_identifier(value)
            definition = self.specs.find_by_identifier(owner) if owner is not None else None
            segments.append("value[x]" if definition is not None and isinstance(definition.value, ChoiceValue) else "value")
        return segments

    def _inline_as_backbone(self, el: ElementDefinition, segment: str) -> ElementDefinition | None:
        # find the child first, it unfolds the current type
        child = el.find_child(segment, self.resolve)
        if child is None:
            self._report(el, DiagnosticKind.INVALID_TARGET_PATH, f"Cannot resolve {segment} below {el.id}")
            return None
        el.type = [{"code": "BackboneElement"}]
        el.reset_base()
        for c in el.children():
            c.reset_base()
        return child

    def apply_nested_type_constraint(self, value, el: ElementDefinition, constraint) -> None:
        # own type constraints are already reflected in the element's effective type
        if constraint.is_own:
            return

        current = el
        for segment in self._element_path(value, constraint):
            current = self._inline_as_backbone(current, segment)
            if current is None:
                return

        is_a = constraint.is_a
        is_reference = bool(current.type) and current.type[0].get("code") == "Reference"
        name = short_id(is_a, logical=True)
        if re.fullmatch(r".*\.value\[x\](:[^.]+)?", current.id):
            current = current.un_slice_it(name) or current
            current.alias = [name]
            current.normalize_choice(name)
        elif re.fullmatch(r".*\.value(:[^.]+)?", current.id):
            if name not in (current.alias or []):
                current.alias = [*(current.alias or []), name]
        else:
            current.rename(re.sub(r"\.[^.:]+(:[^.]+)?$", lambda m: f".{name}{m.group(1) or ''}", current.id))

        current.type = self.to_type_array(IdentifiableValue(identifier=is_a, is_reference=is_reference))
        description = self.description(is_a, is_a.name)
        current.short = first_line(description)
        current.definition = description
        current.code = self.concepts(is_a) or None

    def apply_includes_type_constraint(self, value, el: ElementDefinition, constraint) -> None:
        # a zeroed out includes type produces nothing
        if constraint.card.is_zeroed_out:
            return

        if constraint.is_own:
            self._make_section_header(el, constraint)
            self._add_included_type(value, el, constraint)
            return

        segments = self._element_path(value, constraint)
        current = el
        for segment in segments:
            current = self._inline_as_backbone(current, segment)
            if current is None:
                return
        self._make_section_header(current, constraint)

        path = [*constraint.path, VALUE] if constraint.on_value else list(constraint.path)
        owner = path[-2] if len(path) > 1 else choice_friendly_effective_identifier(value)
        definition = self.specs.find_by_identifier(owner) if owner is not None else None
        if definition is None:
            return
        if path[-1].is_value_keyword:
            list_value = definition.value
        else:
            list_value = next(
                (f for f in definition.value_and_fields if choice_friendly_effective_identifier(f) == path[-1]),
                None,
            )
        if list_value is not None:
            self._add_included_type(list_value, current, constraint)

    @staticmethod
    def _make_section_header(el: ElementDefinition, constraint) -> None:
        # a section header is 0..1 or 1..1, required when any included type is
        el.type = None
        el.reset_base()
        if (el.min or 0) > 1 or constraint.card.min > 0:
            el.min = 1
        el.max = "1"

    def _add_included_type(self, value, el: ElementDefinition, constraint) -> None:
        is_a = constraint.is_a
        child_id = f"{el.id}.{short_id(is_a, logical=True)}"
        child = el.structure.find_element(child_id) or el.new_child_element(short_id(is_a, logical=True))
        child.modify_card(constraint.card.min, constraint.card.max)
        description = self.description(is_a, is_a.name)
        child.short = first_line(description)
        child.definition = description
        is_reference = getattr(value, "is_reference", False)
        child.type = self.to_type_array(IdentifiableValue(identifier=is_a, is_reference=is_reference))
        child.code = self.concepts(is_a) or None
        child.must_support = False
        child.is_modifier = False
        child.is_summary = False

    def apply_includes_code_invariant(self, value, el: ElementDefinition, constraint) -> None:
        """Logical models cannot repeat paths, so included codes become FHIRPath invariants."""
        target = self._target(value, el, constraint)
        if target is None:
            return

        # the repetition may happen further up the path
        repeatable = target
        while repeatable is not None and (repeatable.base or {}).get("max", repeatable.max) in ("0", "1"):
            repeatable = repeatable.parent()
        if repeatable is None:
            self._report(target, DiagnosticKind.UNSUPPORTED_SHAPE, f"No repeating element to constrain at {target.id}")
            return
        prefix = target.path[len(repeatable.path) + 1 :] + "." if repeatable.path != target.path else ""

        code = constraint.code
        display = f" ({code.display})" if code.display else ""
        codes = target.type_codes
        if "CodeableConcept" in codes:
            if code.system:
                human = f"There must exist a {prefix}coding with system '{code.system}' and code '{code.code}'{display}."
                expression = f"{prefix}coding.where(system = '{code.system}' and code = '{code.code}').exists()"
            else:
                human = f"There must exist a {prefix}coding with code '{code.code}'{display}."
                expression = f"{prefix}coding.where(code = '{code.code}').exists()"
        elif "Coding" in codes:
            if code.system:
                human = (
                    f"There must exist a pairing of {prefix}system '{code.system}' "
                    f"and {prefix}code '{code.code}'{display}."
                )
                expression = f"{prefix}where(system = '{code.system}' and code = '{code.code}').exists()"
            else:
                human = f"There must exist a {prefix}code '{code.code}'{display}."
                expression = f"{prefix}where(code = '{code.code}').exists()"
        elif "code" in codes:
            suffix = "." if not prefix else f" at {prefix}"
            human = f"There must exist a value of '{code.code}'{display}{suffix}"
            expression = f"{prefix}where($this = '{code.code}').exists()"
        else:
            self._report(target, DiagnosticKind.TYPE_MISMATCH, f"Cannot fix code {code.code} on {target.id}")
            return

        invariants = repeatable.constraint or []
        key = f"{repeatable.path.split('.')[-1]}-{len(invariants) + 1}"
        repeatable.constraint = [
            *invariants,
            {"key": key, "severity": "error", "human": human, "expression": expression},
        ]

"""Builds FHIR profiles from element mappings.

A profile starts as a copy of the mapping's target base definition. The
mapping rules then constrain it, unmapped fields are added as extensions and
a cleanup pass narrows choices to the selected types. Only changed elements
end up in the differential.
"""

from __future__ import annotations

import logging
import re

from . import narrative
from .consts import BASIC_CODE_SYSTEM, UNKNOWN_NAMESPACE
from .constraint_applier import VALUE, ConstraintApplier, is_selected, push_shr_mapping, strip_type_markers
from .context import CompilerContext
from .data.base_definitions import BaseDefinitions
from .data.specifications import Specifications
from .errors import CompilerError, DefinitionNotFound, InvalidElementPath, UnsupportedShape
from .extensions import ExtensionSynthesizer
from .model.constraints import Concept
from .model.data_element import DataElement
from .model.diagnostic import DiagnosticKind
from .model.identifier import Identifier
from .model.mapping import CardinalityRule, ElementMapping, FieldToFieldRule, FieldToURLRule, FixedValueRule
from .model.values import IdentifiableValue, choice_friendly_effective_identifier
from .naming import capitalize, first_line, fhir_id, fhir_url, lower_first, short_id, tokenize
from .tree.element import ElementDefinition, type_name
from .tree.structure import StructureDefinition

logger = logging.getLogger(__name__)

# a differential with nothing but these keys does not constrain anything
NO_DIFF_KEYS = {"id", "path", "short", "definition", "mapping"}
NO_DIFF_ROOT_KEYS = NO_DIFF_KEYS | {"mustSupport", "isModifier", "isModifierReason", "isSummary"}

SHORT_LENGTH = 140


def as_short(description: str | None) -> str | None:
    """First sentence of a description, without the trailing period FHIR shorts leave out."""
    if not description:
        return description
    line = first_line(description)
    first_sentence = re.split(r"(?<=\.)\s+(?=[A-Z0-9])", line, maxsplit=1)[0]
    short = line if len(line) <= SHORT_LENGTH else first_sentence
    if short == first_sentence and short.endswith("."):
        return short[:-1]
    return short


def diagnostic_kind(exc: CompilerError) -> DiagnosticKind:
    if isinstance(exc, DefinitionNotFound):
        return DiagnosticKind.INVALID_SOURCE_PATH
    if isinstance(exc, InvalidElementPath):
        return DiagnosticKind.INVALID_TARGET_PATH
    return DiagnosticKind.UNSUPPORTED_SHAPE


def rule_sort_key(rule) -> tuple[int, str]:
    # cardinality and fixed value rules before anything is copied into slices, then parents before children
    if isinstance(rule, (CardinalityRule, FixedValueRule)):
        return 0, rule.target
    if isinstance(rule, FieldToURLRule):
        return 1, rule.target_url
    return 1, rule.target


def is_path_prefix(prefix: str, path: str) -> bool:
    return path == prefix or path.startswith(prefix + ".")


def in_slice_value(targets: list[str], names: list[str], slice_at: dict[str, str]) -> str:
    """Slice-aware path of the innermost slice group, e.g. `component:a.value:b`."""
    value = targets[-1]
    for target, name in reversed(list(zip(targets, names))):
        at = slice_at.get(target)
        if at is not None and is_path_prefix(at, target):
            replacement = f"{at}:{name}{target[len(at):]}"
        else:
            replacement = f"{target}:{name}"
        if value.startswith(target):
            value = replacement + value[len(target):]
    return value


CODE_LITERAL = re.compile(r"(?P<system>[^\s#]+)?#(?P<code>[^\s#]+)")
STRING_LITERAL = re.compile(r'"(?P<text>.*)"', re.DOTALL)
INTEGER_LITERAL = re.compile(r"[+-]?\d+")
DECIMAL_LITERAL = re.compile(r"[+-]?\d*\.\d+")
DATE_LITERAL = re.compile(r"\d{4}-\d{2}(-\d{2})?")
DATE_TIME_LITERAL = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:\d{2})?")
TIME_LITERAL = re.compile(r"\d{2}:\d{2}(:\d{2}(\.\d+)?)?")
URI_LITERAL = re.compile(r"[A-Za-z][A-Za-z0-9+.-]*:\S+")


def fixed_value_candidates(text: str) -> dict[str, object]:
    """FHIR types a literal of a fixed value rule fits, with the value to fix for each."""
    text = text.strip()
    match = CODE_LITERAL.fullmatch(text)
    if match is not None:
        concept = Concept(system=match.group("system"), code=match.group("code"))
        candidates: dict[str, object] = {"code": concept, "Coding": concept, "CodeableConcept": concept}
        if concept.system is not None:
            candidates["uri"] = text
        return candidates
    if text in ("true", "false"):
        return {"boolean": text == "true"}
    match = STRING_LITERAL.fullmatch(text)
    if match is not None:
        return {"string": match.group("text")}
    if INTEGER_LITERAL.fullmatch(text):
        number = int(text)
        candidates = {"integer": number}
        if number >= 0:
            candidates["unsignedInt"] = number
        if number > 0:
            candidates["positiveInt"] = number
        candidates["decimal"] = number
        if re.fullmatch(r"\d{4}", text):
            candidates.update({"date": text, "dateTime": text})
        return candidates
    if DECIMAL_LITERAL.fullmatch(text):
        return {"decimal": float(text)}
    if DATE_LITERAL.fullmatch(text):
        return {"date": text, "dateTime": text}
    if DATE_TIME_LITERAL.fullmatch(text):
        return {"dateTime": text, "instant": text}
    if TIME_LITERAL.fullmatch(text):
        return {"time": text}
    if URI_LITERAL.fullmatch(text):
        return {"uri": text}
    return {}


def is_no_diff(profile: StructureDefinition) -> bool:
    differential = [el.to_json() for el in profile.differential]
    if len(differential) <= 1:
        return True
    for el in differential:
        allowed = NO_DIFF_ROOT_KEYS if "." not in el["path"] else NO_DIFF_KEYS
        if not set(el) <= allowed:
            return False
    return True


def slice_min_total(el: ElementDefinition) -> int:
    """Sum of the mins of the slices of `el`, a re-sliced slice counts with its own total."""
    if el.slicing is None:
        return el.min or 0
    return sum(slice_min_total(s) for s in el.slices())


class ProfileBuilder:
    def __init__(
        self,
        context: CompilerContext,
        specs: Specifications,
        base_definitions: BaseDefinitions,
        applier: ConstraintApplier,
        extensions: ExtensionSynthesizer,
    ) -> None:
        self.context = context
        self.specs = specs
        self.base_definitions = base_definitions
        self.applier = applier
        self.extensions = extensions
        self.resolver = applier.resolver
        applier.profiles = self

        self._profiles: dict[str, StructureDefinition] = {}
        self._no_diff: set[str] = set()

    @property
    def profiles(self) -> list[StructureDefinition]:
        return [p for p in self._profiles.values() if p.id not in self._no_diff]

    @property
    def no_diff_profiles(self) -> list[StructureDefinition]:
        return [p for p in self._profiles.values() if p.id in self._no_diff]

    def is_no_diff(self, profile: StructureDefinition) -> bool:
        return profile.id in self._no_diff

    def build_all(self) -> None:
        for definition in self.specs.data_elements:
            mapping = self.specs.find_mapping(definition.identifier)
            if mapping is None or fhir_id(mapping.identifier) in self._profiles:
                continue
            try:
                self.mapping_to_profile(mapping)
            except Exception:
                logger.exception("unexpected error processing mapping of %s", mapping.identifier)

    # --- lookups ------------------------------------------------------

    def lookup_profile(self, identifier: Identifier) -> StructureDefinition | None:
        """Profile for `identifier`, built on first use.

        Elements without a mapping are profiled on `Basic`. A profile without
        differences stands for its base definition.
        """
        profile = self._profiles.get(fhir_id(identifier))
        if profile is None:
            mapping = self.specs.find_mapping(identifier)
            if mapping is None:
                mapping = ElementMapping(identifier=identifier, target_item="Basic")
                self.specs.add_mapping(mapping)
            profile = self.mapping_to_profile(mapping)

        if profile is not None and profile.id in self._no_diff:
            return self.applier.base_structure(profile.base_definition)
        return profile

    def profile_by_url(self, url: str) -> StructureDefinition | None:
        for profile in self._profiles.values():
            if profile.url == url and profile.id not in self._no_diff:
                return profile
        return None

    # --- profile ------------------------------------------------------

    def mapping_to_profile(self, mapping: ElementMapping) -> StructureDefinition | None:
        identifier = mapping.identifier
        logger.debug("mapping %s to %s", identifier, mapping.target_item)

        profile = self._new_profile(mapping)
        if profile is None:
            return None
        # registered before the rules run, recursive lookups find this instance
        self._profiles[profile.id] = profile

        self.process_mapping_rules(mapping, profile)
        self.add_extensions(mapping, profile)
        self.process_content_profile_rules(mapping, profile)
        if mapping.target_item == "Basic":
            self.set_code_on_basic(profile)
        self.cleanup_profile(profile)

        if is_no_diff(profile):
            logger.debug("%s has no differences to %s", profile.id, profile.base_definition)
            self._no_diff.add(profile.id)
        return profile

    def _new_profile(self, mapping: ElementMapping) -> StructureDefinition | None:
        config = self.context.config
        identifier = mapping.identifier
        profile_id = fhir_id(identifier)

        data = self.base_definitions.find(mapping.target_item)
        if data is None:
            self.context.report(profile_id, DiagnosticKind.INVALID_TARGET_PATH, f"Invalid FHIR target: {mapping.target_item}")
            return None
        for key in ("meta", "extension", "version", "text"):
            data.pop(key, None)
        # examples of the base rarely fit the profile
        for element in data.get("snapshot", {}).get("element", []):
            element.pop("example", None)

        profile = StructureDefinition.from_json(data, slicing_ids=self.context.slicing_ids)
        description = self.applier.description(identifier)
        base_url = data.get("url")

        profile.id = profile_id
        profile.url = fhir_url(identifier, config.fhir_url)
        profile.identifier = [{"system": config.project_url, "value": identifier.fqn}]
        profile.name = tokenize(identifier.name)
        profile.title = profile_id
        profile.status = "draft"
        profile.description = description
        profile.publisher = config.publisher
        profile.contact = config.contact_json or None
        profile.date = config.publish_date
        profile.text = narrative.render(f"{identifier.name} Profile", description, mapping)
        keywords = [c.to_coding() for c in self._concepts(identifier)]
        if keywords:
            profile.keyword = [*(profile.keyword or []), *keywords]
        profile.base_definition = base_url
        profile.derivation = "constraint"

        root = profile.root
        root.short = profile.title
        root.definition = self.applier.description(identifier, root.definition)
        return profile

    def _concepts(self, identifier: Identifier) -> list:
        definition = self.specs.find_by_identifier(identifier)
        return definition.concepts if definition is not None else []

    def _report(self, profile: StructureDefinition, kind: DiagnosticKind, message: str, path: str | None = None):
        self.context.report(profile.id, kind, message, path)

    # --- rules --------------------------------------------------------

    def process_mapping_rules(self, mapping: ElementMapping, profile: StructureDefinition) -> None:
        rules = self.enhance_rules(mapping, profile)
        self.detect_elements_needing_slices(rules, profile)

        for rule in sorted(rules, key=rule_sort_key):
            logger.debug("processing rule %s", rule)
            try:
                if isinstance(rule, CardinalityRule):
                    self.process_cardinality_rule(rule, profile)
                elif isinstance(rule, FixedValueRule):
                    self.process_fixed_value_rule(rule, profile)
                elif rule.has_tbd:
                    continue
                elif isinstance(rule, FieldToURLRule):
                    self.add_extension(mapping, profile, rule.source_path, url=rule.target_url)
                elif isinstance(rule, FieldToFieldRule):
                    self.process_field_rule(mapping, rule, profile)
                else:
                    self._report(profile, DiagnosticKind.UNSUPPORTED_SHAPE, f"Unsupported mapping rule {rule}")
            except CompilerError as exc:
                self._report(profile, diagnostic_kind(exc), str(exc))
            except Exception:
                logger.exception("unexpected error processing rule %s of %s", rule, profile.id)

    def enhance_rules(self, mapping: ElementMapping, profile: StructureDefinition) -> list:
        """Rules as processed: includes slicing expanded and every rule placed in its slice."""
        rules = self.expand_includes_slicing(mapping, profile)
        return self.assign_slices(rules)

    def expand_includes_slicing(self, mapping: ElementMapping, profile: StructureDefinition) -> list:
        """Repeat a rule sliced with the "includes" strategy for each of its included types.

        The rule itself keeps mapping the base type, unsliced. Each included
        type gets a copy of the rule and of the rules for its children,
        inserted after those children.
        """
        rules = list(mapping.rules)
        definition = self.specs.find_by_identifier(mapping.identifier)
        i = 0
        while i < len(rules):
            rule = rules[i]
            if not isinstance(rule, FieldToFieldRule) or rule.slice_strategy != "includes":
                i += 1
                continue

            rules[i] = rule.model_copy(
                update={"slice_on": None, "slice_on_type": "value", "slice_at": None, "slice_strategy": None}
            )
            source_value = self.resolver.find_value_by_path(rule.source_path, definition) if definition else None
            if source_value is None:
                i += 1
                continue

            depth = len(rule.source_path)
            end = i + 1
            while end < len(rules):
                child = rules[end]
                if isinstance(child, (FieldToFieldRule, FieldToURLRule)):
                    if len(child.source_path) <= depth or child.source_path[:depth] != rule.source_path:
                        break
                end += 1
            children = [r for r in rules[i + 1 : end] if isinstance(r, FieldToFieldRule)]

            added = []
            for itc in source_value.constraints_filter.includes_type:
                if itc.path:
                    self._report(
                        profile,
                        DiagnosticKind.UNSUPPORTED_SHAPE,
                        "Slicing on includes type constraints with paths is not supported",
                    )
                    continue
                source_path = [*rule.source_path[:-1], itc.is_a]
                added.append(rule.model_copy(update={"source_path": source_path, "slice_strategy": None}))
                for child in children:
                    added.append(child.model_copy(update={"source_path": [*source_path, *child.source_path[depth:]]}))

            rules[end:end] = added
            i = end + len(added)
        return rules

    @staticmethod
    def assign_slices(rules: list) -> list:
        """Fill in `in_slice` for the rules of each slice group.

        A rule with a slice on command starts a slice group on its target.
        Following rules with the same target add slices to the group, rules
        below the target map into the current slice.
        """
        slice_on: dict[str, tuple[str, str]] = {}
        slice_at: dict[str, str] = {}
        targets: list[str] = []
        names: list[str] = []

        result = []
        for rule in rules:
            if not isinstance(rule, FieldToFieldRule):
                result.append(rule)
                continue
            while targets and not is_path_prefix(targets[-1], rule.target):
                targets.pop()
                names.pop()

            slice_name = fhir_id(rule.source_path[-1]) if rule.source_path else None
            if rule.slice_on is not None:
                slice_on[rule.target] = (rule.slice_on, rule.slice_on_type)
                if rule.slice_at is not None:
                    slice_at[rule.target] = rule.slice_at
                if targets and targets[-1] == rule.target:
                    names.pop()
                else:
                    targets.append(rule.target)
                names.append(slice_name)
                rule = rule.model_copy(update={"in_slice": in_slice_value(targets, names, slice_at)})
            elif targets and targets[-1] == rule.target:
                on, on_type = slice_on[rule.target]
                names[-1] = slice_name
                rule = rule.model_copy(
                    update={
                        "slice_on": on,
                        "slice_on_type": on_type,
                        "slice_at": slice_at.get(rule.target),
                        "in_slice": in_slice_value(targets, names, slice_at),
                    }
                )
            elif targets:
                rule = rule.model_copy(update={"in_slice": in_slice_value(targets, names, slice_at)})
            result.append(rule)
        return result

    def detect_elements_needing_slices(self, rules: list, profile: StructureDefinition) -> None:
        counts: dict[str, int] = {}
        for rule in rules:
            if isinstance(rule, FieldToFieldRule) and rule.in_slice is None and not rule.has_tbd:
                counts[rule.target] = counts.get(rule.target, 0) + 1

        repeated = [t for t, n in counts.items() if n > 1]
        for target in repeated:
            if any(other != target and is_path_prefix(other, target) for other in repeated):
                continue
            el = profile.root.find_child(target)
            # several rules fit an element only as long as each can take its own type
            if el is not None and len(el.type or []) < counts[target]:
                self._report(
                    profile,
                    DiagnosticKind.UNSUPPORTED_SHAPE,
                    f"Slicing required to disambiguate multiple mappings to {target}",
                )

    def find_target_element(self, profile: StructureDefinition, target: str, source_value=None):
        root = profile.root
        el = root.find_child(target, self.applier.resolve)

        if el is None and target.endswith("[x]"):
            # the base may have replaced the choice with its explicit form, e.g. valueQuantity
            if isinstance(source_value, IdentifiableValue):
                value_mapping = self.specs.find_mapping(source_value.effective_identifier)
                if value_mapping is not None:
                    el = root.find_child(target[:-3] + capitalize(value_mapping.target_item), self.applier.resolve)

            prefix = f"{profile.type}.{target[:-3]}"
            for candidate in profile.elements:
                if el is not None:
                    break
                rest = candidate.path[len(prefix):]
                if candidate.path.startswith(prefix) and rest and "." not in rest and rest != "[x]":
                    el = root.find_child(candidate.path[len(profile.type) + 1:], self.applier.resolve)

        # a content reference must be unrolled before it can be profiled
        if el is not None and el.type is None and el.content_reference:
            el.unfold(self.applier.resolve)
        return el

    def find_rule_target(self, profile: StructureDefinition, rule: FieldToFieldRule, source_value=None, slice_card=None):
        if rule.in_slice is None:
            return self.find_target_element(profile, rule.target, source_value)
        return self.find_sliced_element(profile, rule, source_value, slice_card)

    def find_sliced_element(self, profile: StructureDefinition, rule: FieldToFieldRule, source_value=None, slice_card=None):
        """Resolve the slice-aware path of a rule, creating the slices it names on the way."""
        segments = rule.target.split(".")
        slice_segments = rule.in_slice.split(".")
        if len(slice_segments) > len(segments):
            raise InvalidElementPath(f"Target path {rule.target} and slice path {rule.in_slice} are not compatible")
        for i, segment in enumerate(slice_segments):
            if segments[i] != segment.split(":", 1)[0]:
                raise InvalidElementPath(f"Target path {rule.target} and slice path {rule.in_slice} are not compatible")
            segments[i] = segment

        el = profile.root
        for i, segment in enumerate(segments):
            name, _, slice_name = segment.partition(":")
            child = el.find_child(segment, self.applier.resolve)
            if child is None and slice_name:
                if any(":" in s for s in segments[i + 1 :]):
                    raise InvalidElementPath(f"Could not resolve sliced path {'.'.join(segments[: i + 1])}")
                base = el.find_child(name, self.applier.resolve)
                if base is not None:
                    child = self.create_slice_from_base(profile, base, slice_name, rule, source_value, slice_card)
            if child is None:
                return None
            el = child

        if el.type is None and el.content_reference:
            el.unfold(self.applier.resolve)
        return el

    def create_slice_from_base(
        self,
        profile: StructureDefinition,
        base: ElementDefinition,
        slice_name: str,
        rule: FieldToFieldRule,
        source_value=None,
        slice_card=None,
    ) -> ElementDefinition | None:
        if rule.slice_on is None:
            self._report(
                profile,
                DiagnosticKind.UNSUPPORTED_SHAPE,
                f"Cannot create slice {slice_name} since there is no slice on command",
                base.id,
            )
            return None

        if rule.slice_at is not None:
            slice_at_path = f"{profile.type}.{rule.slice_at}"
            while base is not None and base.path != slice_at_path:
                base = base.parent()
            if base is None:
                self._report(
                    profile, DiagnosticKind.INVALID_TARGET_PATH, f"Could not find element to slice at {slice_at_path}"
                )
                return None

        base.slice_it(rule.slice_on_type, rule.slice_on)
        el = base.copy_as_slice(slice_name)

        if isinstance(source_value, IdentifiableValue):
            identifier = source_value.effective_identifier
            el.short = self.applier.short_description(identifier)
            el.definition = self.applier.description(identifier, identifier.name)
        if slice_card is not None:
            self.applier.set_cardinality(slice_card, el)
        return el

    @staticmethod
    def slice_root(el: ElementDefinition) -> ElementDefinition | None:
        current = el
        while current is not None and current.slice_name is None:
            current = current.parent()
        return current

    def process_cardinality_rule(self, rule: CardinalityRule, profile: StructureDefinition) -> None:
        el = self.find_target_element(profile, rule.target)
        if el is None:
            self._report(
                profile,
                DiagnosticKind.INVALID_TARGET_PATH,
                f"Invalid target path {rule.target}, cannot apply cardinality constraint",
            )
            return
        self.applier.set_cardinality(rule.card, el)

    def process_fixed_value_rule(self, rule: FixedValueRule, profile: StructureDefinition) -> None:
        """Fix a literal on the target, typed by the first element type the literal fits.

        A target like `value[x].boolean` picks the option of the choice first.
        """
        segments = rule.target.split(".")
        option = None
        if len(segments) > 1 and segments[-2].endswith("[x]"):
            option = segments[-1]
            segments = segments[:-1]

        el = self.find_target_element(profile, ".".join(segments))
        if el is not None and option is not None:
            el = el.choice_option(option)
        if el is None:
            self._report(
                profile, DiagnosticKind.INVALID_TARGET_PATH, f"Invalid target path {rule.target}, cannot fix {rule.value}"
            )
            return

        candidates = fixed_value_candidates(rule.value)
        if not candidates:
            self._report(
                profile, DiagnosticKind.UNSUPPORTED_SHAPE, f"Cannot detect a FHIR type for fixed value {rule.value}", el.id
            )
            return
        type_code = next((code for code in el.type_codes if code in candidates), None)
        if type_code is None:
            self._report(
                profile,
                DiagnosticKind.TYPE_MISMATCH,
                f"Cannot fix {el.id} to {rule.value} since it is not one of: {', '.join(candidates)}",
                el.id,
            )
            return

        value = candidates[type_code]
        if isinstance(value, Concept):
            fixed = el.fix_code(value, type_code)
        else:
            fixed = el.fix_value(type_code, value)
        if not fixed:
            self._report(
                profile, DiagnosticKind.VALUE_CONFLICT, f"Cannot fix {el.id} to {rule.value}, it is already fixed", el.id
            )
            return

        if el.max == "1" and len(el.type) > 1:
            el.type = [t for t in el.type if t.get("code") == type_code]

    def process_field_rule(self, mapping: ElementMapping, rule: FieldToFieldRule, profile: StructureDefinition) -> None:
        definition = self.specs.find_by_identifier(mapping.identifier)
        if definition is None:
            raise DefinitionNotFound(f"No data element for {mapping.identifier}")

        source_value = self.resolver.find_value_by_path(rule.source_path, definition)
        if source_value is None:
            # the path was constrained out by a subclass of the mapped element
            logger.debug("%s no longer exists on %s", ".".join(i.name for i in rule.source_path), definition.identifier)
            return

        from_includes_type = getattr(source_value, "derived_from_includes_type", False)
        # an included type takes its cardinality to the root of its slice
        slice_card = source_value.card if from_includes_type else None

        el = self.find_rule_target(profile, rule, source_value, slice_card)
        if el is None:
            self._report(profile, DiagnosticKind.INVALID_TARGET_PATH, f"Invalid or unsupported target path {rule.target}")
            return

        is_value = definition.value is not None and choice_friendly_effective_identifier(source_value) == getattr(
            definition.value, "identifier", None
        )
        if is_value:
            push_shr_mapping(el, [VALUE])
        elif not from_includes_type:
            push_shr_mapping(el, rule.source_path)

        if not from_includes_type:
            self.process_field_cardinality(mapping, rule, source_value, el)
        self.process_field_type(mapping, definition, rule, source_value, el)

    def _has_rule_for(self, mapping: ElementMapping, source_path: list[Identifier], target: str) -> bool:
        return any(
            isinstance(r, FieldToFieldRule) and r.source_path == source_path and r.target == target
            for r in mapping.rules
        )

    def process_field_cardinality(self, mapping, rule: FieldToFieldRule, source_value, el: ElementDefinition) -> None:
        source_path = rule.source_path
        target_path = rule.target.split(".")

        # a slice at an ancestor takes the cardinality of the mapped field
        if rule.slice_on is not None and rule.in_slice is not None:
            root = self.slice_root(el)
            if root is not None and root is not el:
                card = self.resolver.aggregate_effective_card(mapping.identifier, source_path) or source_value.effective_card
                self.applier.set_cardinality(card, root)
                return

        if len(source_path) == 1:
            self.applier.set_cardinality(source_value.effective_card, el)
            return

        # a path mapped segment by segment constrains each segment on its own
        if len(source_path) == len(target_path) and all(
            self._has_rule_for(mapping, source_path[:i], ".".join(target_path[:i])) for i in range(1, len(source_path))
        ):
            self.applier.set_cardinality(source_value.effective_card, el)
            return

        card = self.resolver.aggregate_effective_card(mapping.identifier, source_path)
        if card is not None:
            self.applier.apply_aggregate_cardinality(card, el)

    def process_field_type(self, mapping, definition: DataElement, rule, source_value, el: ElementDefinition) -> None:
        original_short = el.short
        original_definition = el.definition

        matched = self.applier.process_value_to_field_type(mapping, rule.source_path, source_value, el)
        if not matched:
            self._report(
                profile=el.structure,
                kind=DiagnosticKind.TYPE_MISMATCH,
                message=f"Mismatched types, cannot map {self._source_text(source_value)} to {self._types_text(el)}",
                path=el.id,
            )
            return

        if definition.description and len(rule.source_path) == 1 and definition.value is not None:
            head = rule.source_path[0]
            value = definition.value
            options = getattr(value, "aggregate_options", [])
            if (
                head.is_value_keyword
                or head in getattr(value, "possible_identifiers", [])
                or any(head in (o.identifier, o.effective_identifier) for o in options if isinstance(o, IdentifiableValue))
            ):
                value_identifier = choice_friendly_effective_identifier(value)
                value_name = value_identifier.name if value_identifier is not None else "value"
                el.short = as_short(self.applier.description(definition.identifier, definition.identifier.name))
                el.definition = f"{capitalize(value_name)} representing {lower_first(definition.description.strip())}"
                return

        constraints = source_value.constraints_filter.own
        if original_short and "|" in original_short:
            # an enumeration in the short is replaced by the bound value set
            if constraints.value_set.has_constraints:
                value_set = self.specs.find_value_set(constraints.value_set.constraints[0].value_set)
                if value_set is not None and value_set.description:
                    el.short = as_short(value_set.description)
                    el.definition = value_set.description
        elif constraints.type.has_constraints:
            identifier = choice_friendly_effective_identifier(source_value)
            if identifier is not None and el.definition == original_definition:
                description = self.applier.description(identifier)
                if description is not None and description != original_definition:
                    el.short = as_short(description)
                    el.definition = description

    def _source_text(self, source_value) -> str:
        identifier = choice_friendly_effective_identifier(source_value)
        if identifier is None:
            return "choice"
        text = identifier.fqn
        if not identifier.is_primitive:
            definition = self.specs.find_by_identifier(identifier)
            value_identifier = choice_friendly_effective_identifier(definition.value) if definition and definition.value else None
            if value_identifier is not None:
                text += f"[Value: {value_identifier.fqn}]"
        value_mapping = self.specs.find_mapping(identifier)
        if value_mapping is not None:
            text += f" (mapped to {value_mapping.target_item})"
        return text

    @staticmethod
    def _types_text(el: ElementDefinition) -> str:
        return ", ".join(type_name(t) for t in el.type or []) or "untyped element"

    # --- extensions ---------------------------------------------------

    def add_extensions(self, mapping: ElementMapping, profile: StructureDefinition) -> None:
        """Add an extension for every top level field no rule maps."""
        definition = self.specs.find_by_identifier(mapping.identifier)
        if definition is None:
            return

        mapped = {r.source_path[0] for r in mapping.source_rules if r.source_path}
        for field in definition.value_and_fields:
            # choices need an explicit rule
            if not isinstance(field, IdentifiableValue):
                continue
            identifier = field.effective_identifier
            if identifier in mapped or field.identifier in mapped:
                continue
            if field is definition.value and VALUE in mapped:
                continue

            target = "modifierExtension" if "modifier" in identifier.name.lower() else "extension"
            try:
                self.add_extension(mapping, profile, [identifier], target=target)
            except CompilerError as exc:
                self._report(profile, diagnostic_kind(exc), str(exc))
            except Exception:
                logger.exception("unexpected error adding extension %s to %s", identifier, profile.id)

    def add_extension(
        self,
        mapping: ElementMapping,
        profile: StructureDefinition,
        source_path: list[Identifier],
        target: str = "extension",
        url: str | None = None,
    ) -> ElementDefinition | None:
        definition = self.specs.find_by_identifier(mapping.identifier)
        if definition is None:
            raise DefinitionNotFound(f"No data element for {mapping.identifier}")
        source_value = self.resolver.find_value_by_path(source_path, definition)
        if source_value is None:
            self._report(
                profile,
                DiagnosticKind.INVALID_SOURCE_PATH,
                f"Cannot resolve {'.'.join(i.name for i in source_path)} on {definition.identifier}",
            )
            return None

        card = self.resolver.aggregate_effective_card(definition.identifier, source_path) or source_value.effective_card
        identifier = choice_friendly_effective_identifier(source_value)
        if identifier is None:
            raise UnsupportedShape(f"Cannot add an extension for the choice at {'.'.join(i.name for i in source_path)}")
        if identifier.namespace == UNKNOWN_NAMESPACE:
            self._report(profile, DiagnosticKind.UNSUPPORTED_SHAPE, f"Unable to establish namespace for {identifier.name}")
            return None

        if url is None:
            url = self.extensions.lookup_extension(identifier).url
        elif len(source_path) > 1:
            logger.info("deep path %s mapped to extension url, placing it at the root", source_path)

        base_el = profile.root.find_child(target, self.applier.resolve)
        if base_el is None:
            raise InvalidElementPath(f"{profile.type} has no {target} element")

        el = next((s for s in base_el.slices() if s.type_codes == ["Extension"] and url in s.type[0].get("profile", [])), None)
        if el is None:
            # a prohibited extension adds nothing
            if card.max == 0:
                return None
            base_el.slice_it("value", "url")
            el = base_el.new_slice(short_id(identifier), {"code": "Extension", "profile": [url]})
            el.short = None
            el.definition = self.applier.description(identifier, identifier.name)
            el.modify_card(card.min, card.max)
        else:
            if el.slice_name is None:
                el.slice_name = short_id(identifier)
            if el.definition is None:
                el.definition = self.applier.description(identifier, identifier.name)
            self.applier.set_cardinality(card, el)

        if target.endswith("modifierExtension"):
            el.must_support = True
            el.is_modifier = True
            el.is_modifier_reason = self.applier.description(identifier, f"{identifier.name} modifies the meaning")
        if el.base is None:
            el.base = {"path": f"{profile.type}.{target}", "min": 0, "max": "*"}

        push_shr_mapping(el, source_path)
        self.applier.apply_constraints(source_value, el, is_extension=True, source_path=source_path)
        return el

    # --- content profiles ---------------------------------------------

    def process_content_profile_rules(self, mapping: ElementMapping, profile: StructureDefinition) -> None:
        content_profile = self.specs.find_content_profile(mapping.identifier)
        if content_profile is None:
            return

        for rule in content_profile.rules:
            if not rule.must_support:
                continue
            elements = self.find_content_profile_elements(profile, rule.path)
            if not elements:
                self._report(
                    profile,
                    DiagnosticKind.INVALID_TARGET_PATH,
                    f"Could not find FHIR element for content profile rule with path {'.'.join(i.name for i in rule.path)}",
                )
                continue
            for el in elements:
                el.must_support = True

    def find_content_profile_elements(self, profile: StructureDefinition, path: list[Identifier]) -> list[ElementDefinition]:
        """Elements a source path ended up on, found through their shr mappings.

        Without an exact match the closest mapped parent is used and the rest
        of the path is followed through the mapping of the parent's type.
        """
        wanted = ".".join(f"<{i.fqn}>" for i in path)
        best, matches = "", []
        for el in profile.elements:
            for entry in el.mapping or []:
                mapped = entry.get("map", "")
                if entry.get("identity") != "shr" or not (wanted == mapped or wanted.startswith(mapped + ".")):
                    continue
                if len(mapped) > len(best):
                    best, matches = mapped, [el]
                elif mapped == best and el not in matches:
                    matches.append(el)
        if not matches or best == wanted:
            return matches

        matched_path = [Identifier.parse(part) for part in best[1:-1].split(">.<")]
        root = matched_path[-1]
        remaining = path[len(matched_path) :]
        if root.is_value_keyword:
            return []

        sub_path = self.applier.find_target_fhir_path(root, remaining)
        if sub_path:
            found = [el.find_child(sub_path, self.applier.resolve) for el in matches]
            return [el for el in found if el is not None]

        if len(remaining) == 1 and remaining[0].is_value_keyword:
            definition = self.specs.find_by_identifier(root)
            value_identifier = choice_friendly_effective_identifier(definition.value) if definition and definition.value else None
            if value_identifier is not None:
                return [el for el in matches if self._is_type_match(value_identifier, el)]
        return []

    def _is_type_match(self, identifier: Identifier, el: ElementDefinition) -> bool:
        codes = el.type_codes
        if identifier.is_primitive:
            return identifier.name in codes
        value_mapping = self.specs.find_mapping(identifier)
        if value_mapping is None:
            return False
        return any(code in codes for code in self.base_definitions.type_hierarchy(value_mapping.target_item))

    # --- cleanup ------------------------------------------------------

    def set_code_on_basic(self, profile: StructureDefinition) -> None:
        el = profile.root.find_child("code")
        if el is None or el.fixed is not None or el.pattern is not None:
            return
        config = self.context.config
        system = BASIC_CODE_SYSTEM.format(fhir_url=config.fhir_url, shorthand=config.project_shorthand)
        el.pattern = ("CodeableConcept", {"coding": [{"system": system, "code": profile.id}]})

    def cleanup_profile(self, profile: StructureDefinition) -> None:
        for el in list(profile.elements):
            if el.structure is None:
                continue
            types = el.type or []
            if not (el.is_choice or len(types) > 1 or (types and is_selected(types[0]))):
                continue

            selected = [t for t in types if is_selected(t)]
            if selected and len(selected) < len(types):
                el.type = selected

            if el.is_choice and len(el.type or []) == 1:
                name = type_name(el.type[0])
                explicit = [s for s in el.slices() if s.type and type_name(s.type[0]) == name]
                if explicit:
                    el.un_slice_it(explicit[0].slice_name)
                elif profile.find_element(el.id[:-3] + capitalize(name)) is not None:
                    # the explicit form already exists, the choice is redundant
                    profile.detach(el)
                else:
                    el.normalize_choice(name)

        for el in profile.elements:
            if el.slicing is None:
                continue
            total = slice_min_total(el)
            if total <= (el.min or 0):
                continue
            if el.card_max is not None and total > el.card_max:
                self._report(
                    profile,
                    DiagnosticKind.CARDINALITY_VIOLATION,
                    f"Cumulative slice min cardinalities {total} exceed the max cardinality {el.max}",
                    el.id,
                )
                continue
            el.min = total

        strip_type_markers(profile)

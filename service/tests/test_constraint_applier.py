"""Tests for applying resolved source values to element trees."""

import pytest
from conftest import data_element, observation, ref

from structure_compiler.constraint_applier import (
    ConstraintApplier,
    allowed_binding_strength_change,
    strip_type_markers,
)
from structure_compiler.data.specifications import Specifications
from structure_compiler.model.cardinality import Cardinality
from structure_compiler.model.constraints import (
    BooleanConstraint,
    CodeConstraint,
    Concept,
    IncludesCodeConstraint,
    IncludesTypeConstraint,
    ValueSetConstraint,
)
from structure_compiler.model.identifier import Identifier
from structure_compiler.model.values import IdentifiableValue
from structure_compiler.resolver import CONCEPT
from structure_compiler.tree.structure import StructureDefinition


@pytest.fixture
def applier(context, base_definitions):
    return ConstraintApplier(context, Specifications(), base_definitions)


@pytest.fixture
def profile():
    sd = StructureDefinition.from_json(observation())
    sd.id = "test-profile"
    return sd


def card(text):
    return Cardinality.parse(text)


def test_set_cardinality_narrows(applier, profile):
    el = profile.find_element("Observation.component")

    assert applier.set_cardinality(card("1..1"), el)

    assert (el.min, el.max) == (1, "1")
    assert el.base == {"path": "Observation.component", "min": 0, "max": "*"}


def test_set_cardinality_violation_leaves_element_alone(applier, profile, context):
    el = profile.find_element("Observation.status")

    assert not applier.set_cardinality(card("0..1"), el)

    assert (el.min, el.max) == (1, "1")
    assert [(d.kind, d.artifact_id, d.path) for d in context.diagnostics] == [
        ("cardinality_violation", "test-profile", "Observation.status")
    ]


def test_choice_options_count_as_optional(applier, profile):
    el = profile.find_element("Observation.value[x]")

    assert applier.fhir_element_cardinality(el) == card("0..1")


def test_set_cardinality_keeps_min_of_required_choice(applier, profile, context):
    el = profile.find_element("Observation.value[x]")
    el.min = 1

    assert applier.set_cardinality(card("0..1"), el)

    assert (el.min, el.max) == (1, "1")
    assert el.base is None
    assert context.diagnostics == []


def test_set_cardinality_cannot_prohibit_required_choice(applier, profile, context):
    el = profile.find_element("Observation.value[x]")
    el.min = 1

    assert not applier.set_cardinality(card("0..0"), el)

    assert (el.min, el.max) == (1, "1")
    assert [d.kind for d in context.diagnostics] == ["cardinality_violation"]


def test_aggregate_element_cardinality(applier, profile):
    el = profile.find_element("Observation.component.code")

    assert applier.aggregate_element_cardinality(el) == card("0..*")


def test_aggregate_zero_out(applier, profile):
    el = profile.find_element("Observation.component.code")

    assert applier.apply_aggregate_cardinality(card("0..0"), el)

    assert (el.min, el.max) == (0, "0")


def test_aggregate_fit_is_reported_not_applied(applier, profile, context):
    el = profile.find_element("Observation.component.code")

    assert not applier.apply_aggregate_cardinality(card("1..1"), el)

    assert (el.min, el.max) == (1, "1")
    assert [d.kind for d in context.diagnostics] == ["unsupported_shape"]


def test_aggregate_violation(applier, profile, context):
    el = profile.find_element("Observation.component.code")
    profile.find_element("Observation.component").max = "2"

    assert not applier.apply_aggregate_cardinality(card("0..5"), el)

    assert [d.kind for d in context.diagnostics] == ["cardinality_violation"]


def test_value_set_binding(applier, profile):
    el = profile.find_element("Observation.code")
    value = IdentifiableValue(
        identifier=Identifier.parse("shr.test.Code"),
        constraints=[ValueSetConstraint(value_set="http://example.com/vs", strength="extensible")],
    )

    applier.apply_constraints(value, el)

    assert el.binding == {"strength": "extensible", "valueSet": "http://example.com/vs"}


def test_binding_cannot_be_weakened(applier, profile, context):
    el = profile.find_element("Observation.status")
    value = IdentifiableValue(
        identifier=Identifier.parse("shr.test.Status"),
        constraints=[ValueSetConstraint(value_set="http://example.com/vs", strength="preferred")],
    )

    applier.apply_constraints(value, el)

    assert el.binding["strength"] == "required"
    assert [d.kind for d in context.diagnostics] == ["value_conflict"]


def test_tbd_value_set_is_ignored(applier, profile):
    el = profile.find_element("Observation.code")
    value = IdentifiableValue(
        identifier=Identifier.parse("shr.test.Code"),
        constraints=[ValueSetConstraint(value_set="urn:tbd:codes")],
    )

    applier.apply_constraints(value, el)

    assert el.binding is None


def test_boolean_on_choice_selects_boolean_option(applier, profile):
    el = profile.find_element("Observation.value[x]")
    value = IdentifiableValue(identifier=Identifier.parse("boolean"), constraints=[BooleanConstraint(value=True)])

    applier.apply_constraints(value, el)

    option = profile.find_element("Observation.valueBoolean:boolean")
    assert option.fixed == ("Boolean", True)


def test_boolean_on_wrong_type(applier, profile, context):
    el = profile.find_element("Observation.code")
    value = IdentifiableValue(identifier=Identifier.parse("boolean"), constraints=[BooleanConstraint(value=True)])

    applier.apply_constraints(value, el)

    assert [d.kind for d in context.diagnostics] == ["type_mismatch"]


def test_binding_strength_order():
    assert allowed_binding_strength_change(None, "example")
    assert allowed_binding_strength_change("preferred", "required")
    assert allowed_binding_strength_change("required", "required")
    assert not allowed_binding_strength_change("required", "extensible")


def test_strip_type_markers(profile):
    el = profile.find_element("Observation.code")
    el.type[0]["_selected"] = True
    el.type[0]["_originalProfiles"] = ["http://example.com"]

    strip_type_markers(profile)

    assert el.type == [{"code": "CodeableConcept"}]
    assert profile.differential == []


def loinc(code):
    return Concept(system="http://loinc.org", code=code)


def test_includes_code_slices_codeable_concept(applier, profile, context):
    el = profile.find_element("Observation.code")
    value = IdentifiableValue(
        identifier=CONCEPT,
        card=card("2..*"),
        constraints=[IncludesCodeConstraint(code=loinc("8480-6")), IncludesCodeConstraint(code=loinc("8462-4"))],
    )

    applier.apply_constraints(value, el)

    assert el.slicing["discriminator"] == [{"type": "value", "path": "coding"}]
    assert [s.slice_name for s in el.slices()] == ["Includes_8480-6", "Includes_8462-4"]
    systolic = profile.find_element("Observation.code:Includes_8480-6")
    assert (systolic.min, systolic.max) == (1, "1")
    assert systolic.pattern == ("CodeableConcept", {"coding": [{"system": "http://loinc.org", "code": "8480-6"}]})
    assert context.diagnostics == []


def test_includes_code_on_code_slices_on_this(applier, profile):
    el = profile.find_element("Observation.status")
    value = IdentifiableValue(identifier=CONCEPT, constraints=[IncludesCodeConstraint(code=Concept(code="final"))])

    applier.apply_constraints(value, el)

    assert el.slicing["discriminator"] == [{"type": "value", "path": "$this"}]
    assert profile.find_element("Observation.status:Includes_final").fixed == ("Code", "final")


def test_includes_code_needs_code_like_source(applier, profile, context):
    el = profile.find_element("Observation.code")
    value = IdentifiableValue(
        identifier=Identifier.parse("shr.test.Code"), constraints=[IncludesCodeConstraint(code=loinc("8480-6"))]
    )

    applier.apply_constraints(value, el)

    assert el.slicing is None
    assert [d.kind for d in context.diagnostics] == ["type_mismatch"]


def test_includes_type_reslices_extension(applier, profile, context):
    extension = profile.find_element("Observation.extension")
    extension.slice_it("value", "url")
    panel = extension.new_slice("panel", {"code": "Extension", "profile": ["http://example.com/ext/panel"]})
    value = IdentifiableValue(
        identifier=Identifier.parse("shr.test.Panel"),
        constraints=[IncludesTypeConstraint(is_a=Identifier.parse("shr.test.Member"), card=card("1..2"))],
    )

    applier.apply_constraints(value, panel, is_extension=True)

    assert panel.slicing["discriminator"] == [{"type": "profile", "path": "valueReference.reference.resolve()"}]
    member = profile.find_element("Observation.extension:panel/Member")
    assert member.slice_name == "panel/Member"
    assert (member.min, member.max) == (1, "2")
    assert member.short == "Member"
    assert member.slicing is None
    assert context.diagnostics == []


def part_specs(rules):
    return Specifications.from_dict(
        {
            "data_elements": [
                data_element("shr.test.Part", fields=[ref("shr.test.PartCode", card="1..1")]),
                data_element("shr.test.PartCode", value=ref("concept", card="1..1")),
            ],
            "mappings": [{"identifier": "shr.test.Part", "target_item": "Observation", "rules": rules}],
        }
    )


def part_with_code():
    return IdentifiableValue(
        identifier=Identifier.parse("shr.test.Part"),
        constraints=[CodeConstraint(path=[Identifier.parse("shr.test.PartCode")], code=loinc("8480-6"))],
    )


def test_child_constraint_follows_mapping_rule(context, base_definitions, profile):
    rules = [{"kind": "field", "source_path": ["shr.test.PartCode"], "target": "code"}]
    applier = ConstraintApplier(context, part_specs(rules), base_definitions)
    el = profile.find_element("Observation.component")

    applier.apply_constraints(part_with_code(), el)

    code = profile.find_element("Observation.component.code")
    assert code.pattern == ("CodeableConcept", {"coding": [{"system": "http://loinc.org", "code": "8480-6"}]})
    assert (code.min, code.max) == (1, "1")
    assert context.diagnostics == []


def test_child_constraint_without_mapping_rule(context, base_definitions, profile):
    applier = ConstraintApplier(context, part_specs([]), base_definitions)
    el = profile.find_element("Observation.component")

    applier.apply_constraints(part_with_code(), el)

    assert profile.find_element("Observation.component.code").pattern is None
    assert [d.kind for d in context.diagnostics] == ["unsupported_shape"]

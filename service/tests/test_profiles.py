"""Tests for building profiles from element mappings."""

from conftest import FHIR, data_element, ref

from structure_compiler.model.constraints import Concept
from structure_compiler.model.identifier import Identifier
from structure_compiler.model.mapping import FieldToFieldRule
from structure_compiler.profiles import ProfileBuilder, as_short, fixed_value_candidates, is_no_diff

FHIR_URL = "http://example.com/fhir/StructureDefinition"
WEIGHT = Identifier.parse("shr.test.Weight")


def model(rules, fields=None, status=None):
    return {
        "data_elements": [
            data_element(
                "shr.test.Weight",
                value=ref("shr.core.Quantity", card="1..1"),
                fields=fields if fields is not None else [ref("shr.test.Note")],
                description="The weight of a patient.",
                is_entry=True,
            ),
            data_element("shr.core.Quantity", description="A measured amount."),
            data_element("shr.test.Note", value=ref("string", card="1..1"), description="A note."),
            data_element("shr.test.Status", value=ref("code", card="1..1"), description="A status."),
            data_element("shr.test.NegationModifier", value=ref("boolean", card="1..1")),
        ],
        "mappings": [
            {"identifier": "shr.test.Weight", "target_item": "Observation", "rules": rules},
            {"identifier": "shr.core.Quantity", "target_item": "Quantity"},
        ],
    }


VALUE_RULE = {"kind": "field", "source_path": ["Value"], "target": "value[x]"}


def build(make_builders, rules, fields=None):
    builders = make_builders(model(rules, fields))
    profile = builders.profiles.lookup_profile(WEIGHT)
    return builders, profile


def kinds(builders):
    return [str(d.kind) for d in builders.context.diagnostics]


def test_profile_header(make_builders):
    builders, profile = build(make_builders, [VALUE_RULE])

    assert profile.id == "shr-test-weight"
    assert profile.url == f"{FHIR_URL}/shr-test-weight"
    assert profile.title == "shr-test-weight"
    assert profile.name == "Weight"
    assert profile.base_definition == f"{FHIR}/Observation"
    assert profile.derivation == "constraint"
    assert profile.identifier == [{"system": "http://example.com/shr", "value": "shr.test.Weight"}]
    assert profile.root.short == "shr-test-weight"
    assert profile.root.definition == "The weight of a patient."
    assert profile.text["status"] == "generated"


def test_value_mapped_to_choice(make_builders):
    builders, profile = build(make_builders, [VALUE_RULE])

    assert profile.find_element("Observation.value[x]") is None
    value = profile.find_element("Observation.valueQuantity")
    assert value.type == [{"code": "Quantity"}]
    assert (value.min, value.max) == (1, "1")
    assert {"identity": "shr", "map": "<Value>"} in value.mapping
    assert value.short == "The weight of a patient"
    assert value.definition == "Quantity representing the weight of a patient."
    assert kinds(builders) == []


def test_unmapped_field_becomes_extension(make_builders):
    builders, profile = build(make_builders, [VALUE_RULE])

    note = profile.find_element("Observation.extension:note")
    assert note.type == [{"code": "Extension", "profile": [f"{FHIR_URL}/shr-test-note-extension"]}]
    assert (note.min, note.max) == (0, "1")
    assert profile.find_element("Observation.extension").slicing["discriminator"] == [
        {"type": "value", "path": "url"}
    ]
    assert [e.id for e in builders.extensions.extensions] == ["shr-test-note-extension"]


def test_modifier_field_becomes_modifier_extension(make_builders):
    builders, profile = build(make_builders, [VALUE_RULE], fields=[ref("shr.test.NegationModifier")])

    modifier = profile.find_element("Observation.modifierExtension:negationmodifier")
    assert modifier.is_modifier is True
    assert modifier.must_support is True
    assert modifier.is_modifier_reason


def test_url_rule_uses_given_extension(make_builders):
    rule = {"kind": "url", "source_path": ["shr.test.Note"], "target_url": "http://example.com/ext/note"}

    builders, profile = build(make_builders, [VALUE_RULE, rule])

    note = profile.find_element("Observation.extension:note")
    assert note.type[0]["profile"] == ["http://example.com/ext/note"]
    assert builders.extensions.extensions == []


def test_mapping_cardinality_mismatch(make_builders):
    rule = {"kind": "field", "source_path": ["shr.test.Status"], "target": "status"}

    builders, profile = build(make_builders, [VALUE_RULE, rule], fields=[ref("shr.test.Status")])

    status = profile.find_element("Observation.status")
    assert kinds(builders) == ["cardinality_violation"]
    assert (status.min, status.max) == (1, "1")


def test_cardinality_rule(make_builders):
    rules = [VALUE_RULE, {"kind": "card", "target": "component", "card": "1..*"}]

    builders, profile = build(make_builders, rules)

    component = profile.find_element("Observation.component")
    assert (component.min, component.max) == (1, "*")
    assert component.base == {"path": "Observation.component", "min": 0, "max": "*"}


def test_cardinality_rule_violation(make_builders):
    rules = [VALUE_RULE, {"kind": "card", "target": "status", "card": "0..1"}]

    builders, profile = build(make_builders, rules)

    assert kinds(builders) == ["cardinality_violation"]
    assert profile.find_element("Observation.status").min == 1


def test_fixed_code_clears_binding(make_builders):
    status = ref(
        "shr.test.Status",
        card="1..1",
        constraints=[{"kind": "code", "on_value": True, "code": {"code": "final"}}],
    )
    rule = {"kind": "field", "source_path": ["shr.test.Status"], "target": "status"}

    builders, profile = build(make_builders, [VALUE_RULE, rule], fields=[status])

    el = profile.find_element("Observation.status")
    assert el.fixed == ("Code", "final")
    assert el.binding is None
    differential = {d.id: d.to_json() for d in profile.differential}
    assert differential["Observation.status"]["fixedCode"] == "final"
    assert kinds(builders) == []


def test_tbd_rule_is_skipped(make_builders):
    rules = [VALUE_RULE, {"kind": "field", "source_path": ["TBD"], "target": "status"}]

    builders, profile = build(make_builders, rules)

    assert kinds(builders) == []
    assert profile.find_element("Observation.status").mapping is None


def test_invalid_target_path(make_builders):
    rules = [{"kind": "field", "source_path": ["Value"], "target": "nonexistent"}]

    builders, profile = build(make_builders, rules)

    assert kinds(builders) == ["invalid_target_path"]
    assert builders.context.diagnostics[0].artifact_id == "shr-test-weight"


def test_type_mismatch(make_builders):
    rules = [VALUE_RULE, {"kind": "field", "source_path": ["shr.test.Note"], "target": "code"}]

    builders, profile = build(make_builders, rules)

    assert "type_mismatch" in kinds(builders)


def test_profile_without_changes_stands_for_its_base(make_builders):
    builders = make_builders(model([VALUE_RULE]))

    quantity = builders.profiles.lookup_profile(Identifier.parse("shr.core.Quantity"))

    assert quantity.url == f"{FHIR}/Quantity"
    assert [p.id for p in builders.profiles.no_diff_profiles] == ["shr-core-quantity"]
    assert is_no_diff(builders.profiles.no_diff_profiles[0])


def test_unmapped_element_is_profiled_on_basic(make_builders):
    builders = make_builders(model([VALUE_RULE]))

    note = builders.profiles.lookup_profile(Identifier.parse("shr.test.Note"))

    assert note.base_definition == f"{FHIR}/Basic"
    code = note.find_element("Basic.code")
    assert code.pattern == (
        "CodeableConcept",
        {"coding": [{"system": "http://example.com/fhir/CodeSystem/SHR-basic-resource-type", "code": "shr-test-note"}]},
    )


def test_build_all_is_memoized(make_builders):
    builders = make_builders(model([VALUE_RULE]))

    builders.profiles.build_all()
    first = builders.profiles.lookup_profile(WEIGHT)
    builders.profiles.build_all()

    assert builders.profiles.lookup_profile(WEIGHT) is first
    assert [p.id for p in builders.profiles.profiles] == ["shr-test-weight"]


def test_as_short():
    assert as_short("A short sentence.") == "A short sentence"
    assert as_short("First line.\nSecond line.") == "First line"
    long = "This sentence is long enough. " + "More" * 40
    assert as_short(long) == "This sentence is long enough"
    assert as_short(None) is None


def weight_profile(builders):
    return builders.profiles.lookup_profile(WEIGHT)


def test_concepts_exceeding_max_are_reported_and_min_kept(make_builders):
    data = model([VALUE_RULE, {"kind": "field", "source_path": ["_Concept"], "target": "code"}])
    data["data_elements"][0]["concepts"] = [
        {"system": "http://loinc.org", "code": "29463-7"},
        {"system": "http://loinc.org", "code": "3141-9"},
    ]
    builders = make_builders(data)

    profile = weight_profile(builders)

    code = profile.find_element("Observation.code")
    assert kinds(builders) == ["cardinality_violation", "cardinality_violation"]
    assert (code.min, code.max) == (1, "1")
    assert code.slicing["discriminator"] == [{"type": "value", "path": "coding"}]
    assert [s.slice_name for s in code.slices()] == ["Includes_29463-7", "Includes_3141-9"]


# --- fixed values ---------------------------------------------------


def test_fixed_value_on_code(make_builders):
    rules = [VALUE_RULE, {"kind": "fixed", "target": "status", "value": "#final"}]

    builders, profile = build(make_builders, rules)

    status = profile.find_element("Observation.status")
    assert status.fixed == ("Code", "final")
    assert status.binding is None
    assert kinds(builders) == []


def test_fixed_value_on_choice_option(make_builders):
    rules = [VALUE_RULE, {"kind": "fixed", "target": "component.value[x].string", "value": '"not measured"'}]

    builders, profile = build(make_builders, rules)

    option = profile.find_element("Observation.component.valueString:string")
    assert option.fixed == ("String", "not measured")
    assert kinds(builders) == []


def test_fixed_value_of_wrong_type(make_builders):
    rules = [VALUE_RULE, {"kind": "fixed", "target": "code", "value": "true"}]

    builders, profile = build(make_builders, rules)

    assert kinds(builders) == ["type_mismatch"]
    assert profile.find_element("Observation.code").fixed is None


def test_conflicting_fixed_values(make_builders):
    rules = [
        VALUE_RULE,
        {"kind": "fixed", "target": "status", "value": "#final"},
        {"kind": "fixed", "target": "status", "value": "#amended"},
    ]

    builders, profile = build(make_builders, rules)

    assert kinds(builders) == ["value_conflict"]
    assert profile.find_element("Observation.status").fixed == ("Code", "final")


def test_unknown_literal_is_reported(make_builders):
    rules = [VALUE_RULE, {"kind": "fixed", "target": "status", "value": "not a literal"}]

    builders, profile = build(make_builders, rules)

    assert kinds(builders) == ["unsupported_shape"]


def test_fixed_value_candidates():
    concept = Concept(system="http://loinc.org", code="8480-6")
    assert fixed_value_candidates("http://loinc.org#8480-6") == {
        "code": concept,
        "Coding": concept,
        "CodeableConcept": concept,
        "uri": "http://loinc.org#8480-6",
    }
    assert fixed_value_candidates("false") == {"boolean": False}
    assert fixed_value_candidates('"a b"') == {"string": "a b"}
    assert fixed_value_candidates("-1") == {"integer": -1, "decimal": -1}
    assert fixed_value_candidates("2019") == {
        "integer": 2019,
        "unsignedInt": 2019,
        "positiveInt": 2019,
        "decimal": 2019,
        "date": "2019",
        "dateTime": "2019",
    }
    assert fixed_value_candidates("1.5") == {"decimal": 1.5}
    assert fixed_value_candidates("2019-01-02T10:00:00Z") == {
        "dateTime": "2019-01-02T10:00:00Z",
        "instant": "2019-01-02T10:00:00Z",
    }
    assert fixed_value_candidates("not a literal") == {}


# --- slicing --------------------------------------------------------


def blood_pressure(rules, panel=None):
    data = model(rules, fields=[panel] if panel else [ref("shr.test.Systolic"), ref("shr.test.Diastolic")])
    data["data_elements"] += [
        data_element("shr.test.Panel", description="A panel of readings."),
        data_element("shr.test.Systolic", value=ref("string", card="1..1"), description="Systolic pressure."),
        data_element("shr.test.Diastolic", value=ref("string", card="1..1"), description="Diastolic pressure."),
    ]
    return data


def test_fields_mapped_into_slices(make_builders):
    rules = [
        VALUE_RULE,
        {"kind": "field", "source_path": ["shr.test.Systolic"], "target": "component", "slice_on": "code"},
        {"kind": "field", "source_path": ["shr.test.Systolic", "Value"], "target": "component.value[x]"},
        {"kind": "field", "source_path": ["shr.test.Diastolic"], "target": "component"},
        {"kind": "field", "source_path": ["shr.test.Diastolic", "Value"], "target": "component.value[x]"},
    ]
    builders = make_builders(blood_pressure(rules))

    profile = weight_profile(builders)

    component = profile.find_element("Observation.component")
    assert component.slicing["discriminator"] == [{"type": "value", "path": "code"}]
    assert [s.slice_name for s in component.slices()] == ["shr-test-systolic", "shr-test-diastolic"]
    systolic = profile.find_element("Observation.component:shr-test-systolic")
    assert (systolic.min, systolic.max) == (0, "1")
    assert systolic.short == "Systolic: Systolic pressure."
    assert profile.find_element("Observation.component:shr-test-systolic.code") is not None
    value = profile.find_element("Observation.component:shr-test-systolic.valueString")
    assert (value.min, value.max) == (1, "1")
    assert profile.find_element("Observation.component.value[x]").type_codes == ["Quantity", "string"]
    assert kinds(builders) == []


def test_repeated_target_without_slicing_is_reported(make_builders):
    rules = [
        VALUE_RULE,
        {"kind": "field", "source_path": ["shr.test.Systolic"], "target": "component"},
        {"kind": "field", "source_path": ["shr.test.Diastolic"], "target": "component"},
    ]
    builders = make_builders(blood_pressure(rules))

    profile = weight_profile(builders)

    assert kinds(builders) == ["unsupported_shape"]
    assert profile.find_element("Observation.component").slicing is None


def test_includes_strategy_slices_each_included_type(make_builders):
    panel = ref(
        "shr.test.Panel",
        card="0..*",
        constraints=[
            {"kind": "includes_type", "is_a": "shr.test.Systolic", "card": "1..1"},
            {"kind": "includes_type", "is_a": "shr.test.Diastolic", "card": "0..1"},
        ],
    )
    rules = [
        VALUE_RULE,
        {
            "kind": "field",
            "source_path": ["shr.test.Panel"],
            "target": "component",
            "slice_on": "code",
            "slice_strategy": "includes",
        },
    ]
    builders = make_builders(blood_pressure(rules, panel=panel))

    profile = weight_profile(builders)

    component = profile.find_element("Observation.component")
    assert [s.slice_name for s in component.slices()] == ["shr-test-systolic", "shr-test-diastolic"]
    systolic = profile.find_element("Observation.component:shr-test-systolic")
    assert (systolic.min, systolic.max) == (1, "1")
    diastolic = profile.find_element("Observation.component:shr-test-diastolic")
    assert (diastolic.min, diastolic.max) == (0, "1")
    # the required slice raises the min of the sliced element
    assert (component.min, component.max) == (1, "*")
    assert kinds(builders) == []


def test_assign_slices():
    def rule(path, target, **commands):
        return FieldToFieldRule(source_path=[Identifier.parse(p) for p in path], target=target, **commands)

    rules = ProfileBuilder.assign_slices(
        [
            rule(["shr.test.Systolic"], "component", slice_on="code"),
            rule(["shr.test.Systolic", "Value"], "component.value[x]"),
            rule(["shr.test.Diastolic"], "component"),
            rule(["Value"], "value[x]"),
        ]
    )

    assert [r.in_slice for r in rules] == [
        "component:shr-test-systolic",
        "component:shr-test-systolic",
        "component:shr-test-diastolic",
        None,
    ]
    assert rules[2].slice_on == "code"


def test_assign_slices_at_ancestor():
    rules = ProfileBuilder.assign_slices(
        [
            FieldToFieldRule(
                source_path=[Identifier.parse("shr.test.Systolic")],
                target="component.code",
                slice_at="component",
                slice_on="code",
            )
        ]
    )

    assert rules[0].in_slice == "component:shr-test-systolic.code"


# --- content profiles -----------------------------------------------


def with_content_profile(data, *paths):
    data["content_profiles"] = [
        {"identifier": "shr.test.Weight", "rules": [{"path": list(p), "must_support": True} for p in paths]}
    ]
    return data


def test_content_profile_marks_mapped_value_must_support(make_builders):
    builders = make_builders(with_content_profile(model([VALUE_RULE]), ["Value"]))

    profile = weight_profile(builders)

    assert profile.find_element("Observation.valueQuantity").must_support is True
    assert profile.find_element("Observation.code").must_support is None
    assert kinds(builders) == []


def test_content_profile_follows_value_of_mapped_field(make_builders):
    rules = [VALUE_RULE, {"kind": "field", "source_path": ["shr.test.Status"], "target": "status"}]
    data = model(rules, fields=[ref("shr.test.Status", card="1..1")])
    builders = make_builders(with_content_profile(data, ["shr.test.Status", "Value"]))

    profile = weight_profile(builders)

    assert profile.find_element("Observation.status").must_support is True
    assert kinds(builders) == []


def test_content_profile_path_without_element(make_builders):
    builders = make_builders(with_content_profile(model([VALUE_RULE]), ["shr.test.Missing"]))

    weight_profile(builders)

    assert kinds(builders) == ["invalid_target_path"]

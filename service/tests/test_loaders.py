"""Tests for loading the project config, the domain model and the base definitions."""

import json

import pytest
import yaml
from conftest import data_element, observation, ref

from structure_compiler.data.base_definitions import BaseDefinitions
from structure_compiler.data.specifications import Specifications
from structure_compiler.errors import InitializationError
from structure_compiler.model.config import CompilerConfig
from structure_compiler.model.identifier import Identifier
from structure_compiler.model.values import ChoiceValue, IdentifiableValue

MODEL = {
    "data_elements": [
        data_element(
            "shr.test.Weight",
            value=ref("shr.core.Quantity"),
            fields=[ref("shr.test.Note", card="0..*")],
            is_entry=True,
        ),
        data_element("shr.test.Note", value={"kind": "choice", "options": [ref("string"), ref("markdown")]}),
        data_element("shr.core.Quantity"),
    ],
    "mappings": [
        {
            "identifier": "shr.test.Weight",
            "target_item": "Observation",
            "rules": [
                {"kind": "field", "source_path": ["Value"], "target": "value[x]"},
                {"kind": "card", "target": "code", "card": "1..1"},
            ],
        }
    ],
    "value_sets": [{"url": "http://example.com/vs/units", "description": "Units of weight"}],
}


def test_specifications_from_dict():
    specs = Specifications.from_dict(MODEL)

    weight = specs.find_by_identifier(Identifier.parse("shr.test.Weight"))
    assert isinstance(weight.value, IdentifiableValue)
    assert weight.fields[0].card.max is None
    note = specs.find_by_identifier(Identifier.parse("shr.test.Note"))
    assert isinstance(note.value, ChoiceValue)
    assert note.value.options[0].identifier.is_primitive
    assert [de.identifier.name for de in specs.entries] == ["Weight"]
    assert specs.find_mapping(Identifier.parse("shr.test.Weight")).target_item == "Observation"
    assert specs.find_value_set("http://example.com/vs/units").description == "Units of weight"


def test_specifications_with_content_profiles():
    model = {
        **MODEL,
        "content_profiles": [
            {"identifier": "shr.test.Weight", "rules": [{"path": ["shr.test.Note", "Value"], "must_support": True}]}
        ],
    }

    specs = Specifications.from_dict(model)

    content_profile = specs.find_content_profile(Identifier.parse("shr.test.Weight"))
    assert content_profile.rules[0].path[-1].is_value_keyword
    assert content_profile.rules[0].must_support
    assert specs.find_content_profile(Identifier.parse("shr.test.Note")) is None
    assert specs.copy().content_profiles == specs.content_profiles


def test_specifications_from_yaml(tmp_path):
    file = tmp_path / "model.yaml"
    file.write_text(yaml.safe_dump(MODEL), encoding="utf-8")

    specs = Specifications.from_yaml(file)

    assert len(specs.data_elements) == 3
    assert len(specs.mappings) == 1


def test_invalid_specifications_raise(tmp_path):
    file = tmp_path / "model.yaml"
    file.write_text(yaml.safe_dump({"data_elements": [{"description": "no identifier"}]}), encoding="utf-8")

    with pytest.raises(InitializationError):
        Specifications.from_yaml(file)


def test_config_from_json(tmp_path):
    file = tmp_path / "config.json"
    file.write_text(
        json.dumps(
            {
                "project_url": "http://example.com/shr",
                "fhir_url": "http://example.com/shr/fhir",
                "project_shorthand": "EX",
                "contact": [{"name": "Team", "telecom": [{"system": "url", "value": "http://example.com"}]}],
            }
        ),
        encoding="utf-8",
    )

    config = CompilerConfig.from_json(file)

    assert config.project_shorthand == "EX"
    assert config.fhir_version == "4.0.1"
    assert config.contact_json == [{"name": "Team", "telecom": [{"system": "url", "value": "http://example.com"}]}]


def test_invalid_config_raises(tmp_path):
    file = tmp_path / "config.json"
    file.write_text(json.dumps({"contact": "nobody"}), encoding="utf-8")

    with pytest.raises(InitializationError):
        CompilerConfig.from_json(file)


def test_base_definitions_lookup_by_id_url_and_type(base_definitions):
    assert base_definitions.find("Observation")["id"] == "Observation"
    assert base_definitions.find("http://hl7.org/fhir/StructureDefinition/Quantity")["type"] == "Quantity"
    assert base_definitions.find("Unknown") is None


def test_base_definitions_return_copies(base_definitions):
    base_definitions.find("Observation")["id"] = "changed"

    assert base_definitions.find("Observation")["id"] == "Observation"


def test_base_definitions_type_hierarchy():
    definitions = BaseDefinitions()
    definitions.add(observation())
    profile = dict(observation(), id="bodyweight", url="http://example.com/bodyweight", derivation="constraint")
    profile["baseDefinition"] = "http://hl7.org/fhir/StructureDefinition/Observation"
    definitions.add(profile)

    assert definitions.type_hierarchy("bodyweight") == ["bodyweight", "Observation"]
    assert definitions.profile_urls("bodyweight") == [
        "http://example.com/bodyweight",
        "http://hl7.org/fhir/StructureDefinition/Observation",
    ]


def test_base_definitions_from_directory(tmp_path):
    (tmp_path / "observation.json").write_text(json.dumps(observation()), encoding="utf-8")
    (tmp_path / "bundle.json").write_text(
        json.dumps({"resourceType": "Bundle", "type": "collection", "entry": []}), encoding="utf-8"
    )
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "invalid.json").write_text(
        json.dumps({"resourceType": "StructureDefinition", "id": "invalid", "status": "nonsense"}), encoding="utf-8"
    )

    definitions = BaseDefinitions.from_directory(tmp_path)

    assert definitions.exists("Observation")
    assert not definitions.exists("invalid")

import pytest

from structure_compiler.constraint_applier import ConstraintApplier
from structure_compiler.context import CompilerContext
from structure_compiler.data.base_definitions import BaseDefinitions
from structure_compiler.data.specifications import Specifications
from structure_compiler.extensions import ExtensionSynthesizer
from structure_compiler.model.config import CompilerConfig
from structure_compiler.profiles import ProfileBuilder

FHIR = "http://hl7.org/fhir/StructureDefinition"


def element(id, min=0, max="1", types=None, **extra):
    el = {"id": id, "path": id, "min": min, "max": max}
    if types is not None:
        el["type"] = [{"code": t} for t in types]
    el.update(extra)
    return el


def structure_definition(type, elements, kind="resource", derivation="specialization", base="DomainResource"):
    return {
        "resourceType": "StructureDefinition",
        "id": type,
        "url": f"{FHIR}/{type}",
        "name": type,
        "status": "active",
        "fhirVersion": "4.0.1",
        "kind": kind,
        "abstract": False,
        "type": type,
        "baseDefinition": f"{FHIR}/{base}",
        "derivation": derivation,
        "snapshot": {"element": elements},
    }


def observation():
    return structure_definition(
        "Observation",
        [
            element("Observation", max="*", short="Measurements and simple assertions"),
            element("Observation.id", types=["id"]),
            element("Observation.extension", max="*", types=["Extension"]),
            element("Observation.modifierExtension", max="*", types=["Extension"]),
            element(
                "Observation.status",
                min=1,
                types=["code"],
                short="registered | preliminary | final | amended +",
                binding={"strength": "required", "valueSet": "http://hl7.org/fhir/ValueSet/observation-status"},
            ),
            element("Observation.code", min=1, types=["CodeableConcept"], short="Type of observation"),
            element(
                "Observation.value[x]",
                types=["Quantity", "CodeableConcept", "string", "boolean"],
                short="Actual result",
            ),
            element("Observation.component", max="*", types=["BackboneElement"]),
            element("Observation.component.code", min=1, types=["CodeableConcept"]),
            element("Observation.component.value[x]", types=["Quantity", "string"]),
        ],
    )


def basic():
    return structure_definition(
        "Basic",
        [
            element("Basic", max="*"),
            element("Basic.id", types=["id"]),
            element("Basic.extension", max="*", types=["Extension"]),
            element("Basic.modifierExtension", max="*", types=["Extension"]),
            element("Basic.code", min=1, types=["CodeableConcept"]),
            element("Basic.subject", types=["Reference"]),
        ],
    )


def quantity():
    return structure_definition(
        "Quantity",
        [
            element("Quantity", max="*"),
            element("Quantity.value", types=["decimal"]),
            element("Quantity.unit", types=["string"]),
            element("Quantity.system", types=["uri"]),
            element("Quantity.code", types=["code"]),
        ],
        kind="complex-type",
        base="Element",
    )


def extension():
    return structure_definition(
        "Extension",
        [
            element("Extension", max="*"),
            element("Extension.id", types=["string"]),
            element("Extension.extension", max="*", types=["Extension"]),
            element("Extension.url", min=1, types=["uri"]),
            element("Extension.value[x]", types=["string", "Quantity", "CodeableConcept"]),
        ],
        kind="complex-type",
        base="Element",
    )


@pytest.fixture
def base_definitions():
    definitions = BaseDefinitions()
    for sd in (observation(), basic(), quantity(), extension()):
        definitions.add(sd)
    return definitions


def data_element(identifier, value=None, fields=None, description=None, **extra):
    data = {"identifier": identifier, "fields": fields or []}
    if value is not None:
        data["value"] = value
    if description is not None:
        data["description"] = description
    data.update(extra)
    return data


def ref(identifier, card=None, constraints=None, **extra):
    value = {"kind": "identifiable", "identifier": identifier}
    if card is not None:
        value["card"] = card
    if constraints is not None:
        value["constraints"] = constraints
    value.update(extra)
    return value


def choice(*options, card=None):
    value = {"kind": "choice", "options": list(options)}
    if card is not None:
        value["card"] = card
    return value


@pytest.fixture
def config():
    return CompilerConfig(
        project_url="http://example.com/shr",
        fhir_url="http://example.com/fhir",
        project_shorthand="SHR",
        publisher="Example Publisher",
        publish_date="2024-01-01",
    )


@pytest.fixture
def context(config):
    return CompilerContext(config=config)


class Builders:
    """The wired up builders of one compiler run."""

    def __init__(self, context, specs, base_definitions):
        self.context = context
        self.specs = specs
        self.applier = ConstraintApplier(context, specs, base_definitions)
        self.extensions = ExtensionSynthesizer(context, specs, base_definitions, self.applier)
        self.profiles = ProfileBuilder(context, specs, base_definitions, self.applier, self.extensions)


@pytest.fixture
def make_builders(context, base_definitions):
    def _make(data):
        return Builders(context, Specifications.from_dict(data), base_definitions)

    return _make

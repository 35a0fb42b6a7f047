from __future__ import annotations

import re

from .model.identifier import Identifier

MODEL_URL_PATTERN = r"{base}/StructureDefinition/([a-z].*)-([A-Z].*)-model"


def capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


def lower_first(text: str) -> str:
    return text[:1].lower() + text[1:]


def first_line(text: str | None) -> str | None:
    if text is None:
        return None
    return text.strip().split("\n", 1)[0]


def tokenize(text: str) -> str:
    return "".join(part for part in re.split(r"[^A-Za-z0-9]+", text) if part)


def fhir_id(identifier: Identifier, kind: str = "profile") -> str:
    namespace = identifier.namespace.replace(".", "-")
    if kind == "model":
        return f"{namespace}-{identifier.name}-model"

    fid = f"{namespace}-{identifier.name.lower()}"
    if kind == "extension":
        fid += "-extension"
    return fid


def fhir_url(identifier: Identifier, base_url: str, kind: str = "profile") -> str:
    return f"{base_url}/StructureDefinition/{fhir_id(identifier, kind)}"


def short_id(identifier: Identifier, logical: bool = False) -> str:
    return lower_first(identifier.name) if logical else identifier.name.lower()


def model_identifier_from_url(url: str, base_url: str) -> Identifier | None:
    match = re.fullmatch(MODEL_URL_PATTERN.format(base=re.escape(base_url)), url)
    if match is None:
        return None
    return Identifier(namespace=match.group(1).replace("-", "."), name=match.group(2))


def path_from_id(element_id: str) -> str:
    return ".".join(part.split(":", 1)[0] for part in element_id.split("."))

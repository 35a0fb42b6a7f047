from __future__ import annotations

import copy

DSTU2 = "1.0.2"

# logical property name -> (DSTU2 key, STU3/R4 key)
ELEMENT_KEYS = {
    "slice_name": ("name", "sliceName"),
    "comment": ("comments", "comment"),
    "content_reference": ("nameReference", "contentReference"),
}

STRUCTURE_KEYS = {
    "base_definition": ("base", "baseDefinition"),
    "keyword": ("code", "keyword"),
    "title": ("display", "title"),
    "type": ("constrainedType", "type"),
}

KEYS = {**ELEMENT_KEYS, **STRUCTURE_KEYS}


class VersionHelper:
    """Reads and writes properties whose key differs between FHIR versions."""

    def __init__(self, fhir_version: str) -> None:
        self.fhir_version = fhir_version

    @property
    def is_dstu2(self) -> bool:
        return self.fhir_version == DSTU2

    def key(self, name: str) -> str:
        dstu2_key, key = KEYS[name]
        return dstu2_key if self.is_dstu2 else key

    def get(self, definition: dict, name: str):
        return definition.get(self.key(name))

    def set(self, definition: dict, name: str, value) -> None:
        definition[self.key(name)] = value

    def delete(self, definition: dict, name: str) -> None:
        definition.pop(self.key(name), None)

    def convert_type(self, type_: dict) -> dict:
        if not self.is_dstu2:
            return type_
        converted = copy.deepcopy(type_)
        # DSTU2 has no targetProfile, the profile list carries both
        profiles = type_.get("profile") or type_.get("targetProfile")
        converted.pop("targetProfile", None)
        if profiles:
            converted["profile"] = list(profiles) if isinstance(profiles, list) else [profiles]
        return converted

    def convert_contact(self, contact: dict) -> dict:
        if not self.is_dstu2 or not any(t.get("system") == "url" for t in contact.get("telecom", [])):
            return contact
        converted = copy.deepcopy(contact)
        for telecom in converted["telecom"]:
            if telecom.get("system") == "url":
                telecom["system"] = "other"
        return converted

    def convert_structure(self, structure: dict) -> dict:
        """Rewrite an R4 shaped StructureDefinition for the configured version."""
        if not self.is_dstu2:
            return structure

        converted = copy.deepcopy(structure)
        for name, (dstu2_key, key) in STRUCTURE_KEYS.items():
            if key in converted:
                converted[dstu2_key] = converted.pop(key)
        # DSTU2 has no derivation, `constrainedType` carries the type
        if converted.pop("derivation", None) != "constraint":
            converted.pop("constrainedType", None)
        if "contact" in converted:
            converted["contact"] = [self.convert_contact(c) for c in converted["contact"]]

        for view in ("snapshot", "differential"):
            for element in converted.get(view, {}).get("element", []):
                for name, (dstu2_key, key) in ELEMENT_KEYS.items():
                    if key in element:
                        element[dstu2_key] = element.pop(key)
                if "nameReference" in element:
                    element["nameReference"] = element["nameReference"].lstrip("#")
                if "type" in element:
                    element["type"] = [self.convert_type(t) for t in element["type"]]
        return converted

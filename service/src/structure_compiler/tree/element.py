from __future__ import annotations

import copy
import re
from typing import TYPE_CHECKING, Callable

from ..model.constraints import BindingStrength, Concept
from ..naming import capitalize, lower_first, path_from_id

if TYPE_CHECKING:
    from .structure import StructureDefinition

PROPS = (
    "id",
    "extension",
    "path",
    "representation",
    "slice_name",
    "label",
    "code",
    "slicing",
    "short",
    "definition",
    "comment",
    "requirements",
    "alias",
    "min",
    "max",
    "base",
    "content_reference",
    "type",
    "default_value",
    "meaning_when_missing",
    "order_meaning",
    "fixed",
    "pattern",
    "example",
    "min_value",
    "max_value",
    "max_length",
    "condition",
    "constraint",
    "must_support",
    "is_modifier",
    "is_modifier_reason",
    "is_summary",
    "binding",
    "mapping",
)

# stored as (type suffix, value) and rendered as e.g. fixedCode
CHOICE_PROPS = ("default_value", "fixed", "pattern", "min_value", "max_value")


def to_camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(part.capitalize() for part in rest)


JSON_KEYS = {prop: to_camel(prop) for prop in PROPS}
PROPS_BY_KEY = {key: prop for prop, key in JSON_KEYS.items()}

Resolve = Callable[[dict], "StructureDefinition | None"]


def _url_name(url: str) -> str:
    name = url.rsplit("/", 1)[-1]
    match = re.fullmatch(r".*-([A-Za-z0-9]+)-model", name)
    return match.group(1) if match is not None else name


def type_name(type_: dict) -> str:
    """Short name of an element type, e.g. `Quantity` or the model name of a logical model url."""
    code = type_.get("code", "")
    return _url_name(code) if "/" in code else code


def type_aliases(type_: dict) -> list[str]:
    names = [type_name(type_)]
    for key in ("profile", "targetProfile"):
        urls = type_.get(key) or []
        for url in [urls] if isinstance(urls, str) else urls:
            if _url_name(url) not in names:
                names.append(_url_name(url))
    return names


class ElementDefinition:
    def __init__(self, id: str = "", **props) -> None:
        for prop in PROPS[1:]:
            setattr(self, prop, None)
        self.id = id
        for prop, value in props.items():
            setattr(self, prop, value)

        self.extra: dict = {}
        self.structure: StructureDefinition | None = None
        self.handle: int | None = None
        self._original: dict | None = None

    def __repr__(self) -> str:
        return f"ElementDefinition({self.id!r})"

    @property
    def id(self) -> str:
        return self._id

    @id.setter
    def id(self, value: str) -> None:
        self._id = value
        self.path = path_from_id(value)

    @property
    def last_segment(self) -> str:
        return self.id.rsplit(".", 1)[-1]

    @property
    def is_choice(self) -> bool:
        return self.id.endswith("[x]")

    @property
    def type_codes(self) -> list[str]:
        return [t.get("code") for t in self.type or []]

    # --- differential -------------------------------------------------

    def capture_original(self) -> None:
        self._original = {prop: copy.deepcopy(getattr(self, prop)) for prop in PROPS}

    @property
    def has_original(self) -> bool:
        return self._original is not None

    def has_diff(self) -> bool:
        if self._original is None:
            return True
        return any(getattr(self, prop) != self._original[prop] for prop in PROPS)

    def calculate_diff(self) -> ElementDefinition:
        diff = ElementDefinition(self.id)
        for prop in PROPS:
            if prop in ("id", "path"):
                continue
            value = getattr(self, prop)
            if value is None:
                continue
            if self._original is None or value != self._original[prop]:
                setattr(diff, prop, copy.deepcopy(value))
        return diff

    # --- serialization ------------------------------------------------

    def to_json(self) -> dict:
        data = {}
        for prop in PROPS:
            value = getattr(self, prop)
            if value is None:
                continue
            if prop in CHOICE_PROPS:
                suffix, value = value
                data[JSON_KEYS[prop] + suffix] = value
            else:
                data[JSON_KEYS[prop]] = value
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return copy.deepcopy(data)

    @staticmethod
    def from_json(data: dict) -> ElementDefinition:
        el = ElementDefinition(data.get("id") or data.get("path", ""))
        for key, value in data.items():
            if key in ("id", "path"):
                continue
            value = copy.deepcopy(value)
            if key in PROPS_BY_KEY:
                setattr(el, PROPS_BY_KEY[key], value)
                continue
            for prop in CHOICE_PROPS:
                prefix = JSON_KEYS[prop]
                if key.startswith(prefix) and key[len(prefix):][:1].isupper():
                    setattr(el, prop, (key[len(prefix):], value))
                    break
            else:
                el.extra[key] = value
        return el

    def clone(self) -> ElementDefinition:
        el = ElementDefinition(self.id)
        for prop in PROPS:
            setattr(el, prop, copy.deepcopy(getattr(self, prop)))
        el.extra = copy.deepcopy(self.extra)
        return el

    # --- navigation ---------------------------------------------------

    def parent(self) -> ElementDefinition | None:
        if "." not in self.id:
            return None
        return self.structure.find_element(self.id.rsplit(".", 1)[0])

    def children(self, include_slices: bool = False) -> list[ElementDefinition]:
        prefix = self.id + "."
        children = []
        for el in self.structure.elements:
            if not el.id.startswith(prefix):
                continue
            rest = el.id[len(prefix):]
            if "." in rest or (":" in rest and not include_slices):
                continue
            children.append(el)
        return children

    def slices(self) -> list[ElementDefinition]:
        if self.is_choice:
            pattern = rf"{re.escape(self.id[:-3])}([A-Z][^.:]*)?:[^.]+"
        else:
            pattern = rf"{re.escape(self.id)}:[^.]+"
        return [el for el in self.structure.elements if re.fullmatch(pattern, el.id)]

    def descendants(self) -> list[ElementDefinition]:
        prefixes = (self.id + ".", self.id + ":")
        slices = self.slices() if self.is_choice else []
        result = []
        for el in self.structure.elements:
            if el.id.startswith(prefixes) or any(el is s or el.id.startswith(s.id + ".") for s in slices):
                result.append(el)
        return result

    def rename(self, new_id: str) -> None:
        """Give this node a new id and move its dotted descendants along."""
        old_id = self.id
        for el in [self, *self.descendants()]:
            if el.id.startswith(old_id):
                el.id = new_id + el.id[len(old_id):]

    def new_child_element(self, name: str) -> ElementDefinition:
        el = ElementDefinition(f"{self.id}.{name}")
        return self.structure.add_element(el)

    def find_child(self, path: str, resolve: Resolve | None = None) -> ElementDefinition | None:
        """Resolve a dotted path below this node.

        Multi-type choices are matched through their type aliases, which
        materializes a type slice on demand. A node whose single type refers
        to another structure is unfolded when the segment is not found.
        """
        if not path:
            return self

        name, _, rest = path.partition(".")
        child = self._find_segment(name)
        if child is None and resolve is not None and self.unfold(resolve):
            child = self._find_segment(name)
        if child is None:
            return None
        return child.find_child(rest, resolve) if rest else child

    def _find_segment(self, name: str) -> ElementDefinition | None:
        child = self.structure.find_element(f"{self.id}.{name}")
        if child is not None:
            return child

        for choice in self.children():
            if choice.is_choice:
                option = choice.choice_option(name)
                if option is not None:
                    return option
        return None

    def choice_option(self, name: str) -> ElementDefinition | None:
        prefix = self.last_segment[:-3]
        for type_ in self.type or []:
            aliases = type_aliases(type_)
            candidates = {prefix + capitalize(a) for a in aliases} | set(aliases) | {lower_first(a) for a in aliases}
            if name not in candidates:
                continue
            if len(self.type) == 1:
                return self
            for slice_el in self.slices():
                if slice_el.type == [type_]:
                    return slice_el
            self.slice_it("type", "$this")
            return self.new_slice(name, copy.deepcopy(type_))
        return None

    def unfold(self, resolve: Resolve) -> bool:
        if self.children():
            return False
        if self.type is None and self.content_reference:
            return self._unroll_content_reference()
        if not self.type or len(self.type) != 1:
            return False

        definition = resolve(self.type[0])
        if definition is None or definition.root is None:
            return False

        root_id = definition.root.id
        for el in list(definition.elements)[1:]:
            new_id = self.id + el.id[len(root_id):]
            if self.structure.find_element(new_id) is not None:
                continue
            clone = el.clone()
            clone.id = new_id
            clone.capture_original()
            self.structure.add_element(clone)
        return True

    def _unroll_content_reference(self) -> bool:
        reference = self.content_reference
        if not reference.startswith("#"):
            return False
        source = next(
            (el for el in self.structure.elements if el.path == reference[1:] and el.slice_name is None),
            None,
        )
        if source is None:
            return False

        self.type = copy.deepcopy(source.type)
        self.content_reference = None
        for el in source.descendants():
            if ":" in el.id[len(source.id):]:
                continue
            clone = el.clone()
            clone.id = self.id + el.id[len(source.id):]
            clone.capture_original()
            self.structure.add_element(clone)
        return True

    # --- slicing ------------------------------------------------------

    def slice_it(self, discriminator_type: str, path: str, ordered: bool = False, rules: str = "open") -> dict:
        if self.slicing is None:
            self.slicing = {
                "id": self.structure.next_slicing_id(),
                "discriminator": [],
                "ordered": ordered,
                "rules": rules,
            }
        discriminator = {"type": discriminator_type, "path": path}
        self.slicing.setdefault("discriminator", [])
        if discriminator not in self.slicing["discriminator"]:
            self.slicing["discriminator"].append(discriminator)
        return self.slicing

    def new_slice(self, name: str, type_: dict | None = None) -> ElementDefinition:
        if self.is_choice:
            suffix = capitalize(type_name(type_)) if type_ is not None else capitalize(name)
            slice_id = f"{self.id[:-3]}{suffix}:{name}"
        else:
            slice_id = f"{self.id}:{name}"

        el = ElementDefinition(slice_id)
        el.slice_name = name
        el.short = self.short
        el.definition = self.definition
        el.min = self.min
        el.max = self.max
        el.base = copy.deepcopy(self.base)
        el.type = [copy.deepcopy(type_)] if type_ is not None else copy.deepcopy(self.type)
        el.must_support = self.must_support
        el.is_modifier = self.is_modifier
        el.is_summary = self.is_summary
        return self.structure.add_element(el)

    def copy_as_slice(self, name: str) -> ElementDefinition:
        """Copy this node and its dotted descendants into a new slice of this node.

        The copied children keep the originals of their sources, so only what
        changes later ends up in the differential.
        """
        slice_id = f"{self.id}:{name}"
        subtree = [el for el in self.descendants() if ":" not in el.id[len(self.id):]]

        root = self.clone()
        root.id = slice_id
        root.slice_name = name
        root.slicing = None
        root.comment = None
        root.requirements = None
        if root.base is None:
            root.base = {"path": self.path, "min": self.min, "max": self.max}
        self.structure.add_element(root)

        for el in subtree:
            clone = el.clone()
            clone.id = slice_id + el.id[len(self.id):]
            if el.has_original:
                clone._original = {**copy.deepcopy(el._original), "id": clone.id, "path": clone.path}
            self.structure.add_element(clone)
        return root

    def un_slice_it(self, name_to_keep: str) -> ElementDefinition | None:
        kept = next((s for s in self.slices() if s.slice_name == name_to_keep), None)
        if kept is None:
            return None

        subtree = [kept, *kept.descendants()]
        structure = self.structure
        position = structure.index_of(self)
        structure.detach(self)

        # the kept slice takes the place of the sliced element
        new_id = kept.id[: -(len(name_to_keep) + 1)]
        old_id = kept.id
        for offset, el in enumerate(subtree):
            el.id = new_id + el.id[len(old_id):]
            structure.add_element(el, position + offset)
        kept.slice_name = None
        return kept

    def normalize_choice(self, tname: str) -> None:
        if self.is_choice:
            self.rename(self.id[:-3] + capitalize(tname))

    # --- constraint helpers -------------------------------------------

    @property
    def card_max(self) -> int | None:
        return None if self.max in (None, "*") else int(self.max)

    def modify_card(self, min: int, max: int | None) -> None:
        self.min = min
        self.max = "*" if max is None else str(max)

    def reset_base(self) -> None:
        self.base = {"path": self.path, "min": self.min, "max": self.max}

    def bind_to_vs(self, uri: str, strength: BindingStrength = BindingStrength.REQUIRED) -> None:
        self.binding = {"strength": str(strength), "valueSet": uri}

    def fix_code(self, concept: Concept, type_code: str | None = None) -> bool:
        """Fix a code on this element. Returns False on an unsupported type or a conflicting fixed value."""
        codes = [type_code] if type_code is not None else self.type_codes
        if "code" in codes:
            prop, value = "fixed", ("Code", concept.code)
        elif "Coding" in codes:
            prop, value = "pattern", ("Coding", concept.to_coding())
        elif "CodeableConcept" in codes:
            prop, value = "pattern", ("CodeableConcept", {"coding": [concept.to_coding()]})
        elif "Quantity" in codes:
            quantity = {"system": concept.system, "code": concept.code}
            prop, value = "pattern", ("Quantity", {k: v for k, v in quantity.items() if v is not None})
        else:
            return False

        current = getattr(self, prop)
        if current is not None and current != value:
            return False
        setattr(self, prop, value)
        self.binding = None
        return True

    def fix_value(self, type_code: str, value) -> bool:
        if type_code not in self.type_codes:
            return False
        fixed = (capitalize(type_code), value)
        if self.fixed is not None and self.fixed != fixed:
            return False
        self.fixed = fixed
        return True

    def fix_boolean(self, value: bool) -> bool:
        return self.fix_value("boolean", value)

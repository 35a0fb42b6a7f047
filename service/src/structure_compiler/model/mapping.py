from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from .cardinality import Cardinality
from .identifier import Identifier


class MappingRuleBase(BaseModel):
    @property
    def has_tbd(self) -> bool:
        return any(i.is_tbd for i in getattr(self, "source_path", []))


class FieldToFieldRule(MappingRuleBase):
    """Maps a source path onto a FHIR path.

    `slice_on` and `slice_at` place the mapped field in its own slice,
    `slice_strategy` "includes" repeats the rule for every includes-type
    constraint on the source. `in_slice` is filled in while the rules are
    processed and is not part of the input.
    """

    kind: Literal["field"] = "field"
    source_path: list[Identifier]
    target: str
    slice_on: str | None = None
    slice_on_type: str = "value"
    slice_at: str | None = None
    slice_strategy: Literal["includes"] | None = None
    in_slice: str | None = Field(default=None, exclude=True)

    @property
    def has_slice_commands(self) -> bool:
        return any(v is not None for v in (self.slice_on, self.slice_at, self.slice_strategy))


class FieldToURLRule(MappingRuleBase):
    kind: Literal["url"] = "url"
    source_path: list[Identifier]
    target_url: str


class CardinalityRule(MappingRuleBase):
    kind: Literal["card"] = "card"
    target: str
    card: Cardinality


class FixedValueRule(MappingRuleBase):
    """Fixes a literal, e.g. `#final`, `true` or `"text"`, on a FHIR path."""

    kind: Literal["fixed"] = "fixed"
    target: str
    value: str


MappingRule = Annotated[
    Union[FieldToFieldRule, FieldToURLRule, CardinalityRule, FixedValueRule],
    Field(discriminator="kind"),
]


class ElementMapping(BaseModel):
    identifier: Identifier
    target_item: str
    rules: list[MappingRule] = []

    @property
    def source_rules(self) -> list[FieldToFieldRule | FieldToURLRule]:
        return [r for r in self.rules if isinstance(r, (FieldToFieldRule, FieldToURLRule))]

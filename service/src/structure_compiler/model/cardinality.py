from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Cardinality(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: int = Field(default=0, ge=0)
    max: int | None = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _parse_range(cls, data):
        if isinstance(data, str):
            low, sep, high = data.partition("..")
            if not sep:
                high = low
            return {"min": int(low), "max": None if high == "*" else int(high)}
        return data

    @model_validator(mode="after")
    def _check_bounds(self) -> Cardinality:
        if self.max is not None and self.max < self.min:
            raise ValueError(f"max ({self.max}) must not be lower than min ({self.min})")
        return self

    @staticmethod
    def parse(text: str) -> Cardinality:
        return Cardinality.model_validate(text)

    @staticmethod
    def from_fhir(min: int | None, max: str | None) -> Cardinality:
        return Cardinality(min=min or 0, max=None if max in (None, "*") else int(max))

    @property
    def is_max_unbounded(self) -> bool:
        return self.max is None

    @property
    def is_zeroed_out(self) -> bool:
        return self.max == 0

    @property
    def max_as_string(self) -> str:
        return "*" if self.max is None else str(self.max)

    def fits_within(self, other: Cardinality) -> bool:
        if self.min < other.min:
            return False
        if other.max is None:
            return True
        return self.max is not None and self.max <= other.max

    def __str__(self) -> str:
        return f"{self.min}..{self.max_as_string}"


def aggregate_cardinality(*cards: Cardinality) -> Cardinality | None:
    """Cardinality of a chain of nested elements.

    The minimum is the product of all minimums. Any zeroed maximum collapses
    the chain to zero, otherwise any unbounded maximum makes it unbounded.
    """
    if not cards:
        return None

    min_ = 1
    max_: int | None = 1
    unbounded = False
    for card in cards:
        min_ *= card.min
        if card.max == 0:
            return Cardinality(min=0, max=0)
        if card.max is None:
            unbounded = True
        else:
            max_ *= card.max

    return Cardinality(min=min_, max=None if unbounded else max_)

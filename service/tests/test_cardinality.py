"""Tests for cardinalities and their aggregation along element paths."""

import pytest
from pydantic import ValidationError

from structure_compiler.model.cardinality import Cardinality, aggregate_cardinality


def card(text):
    return Cardinality.parse(text)


def test_parse_range():
    result = card("1..*")

    assert result.min == 1
    assert result.max is None
    assert result.is_max_unbounded


def test_parse_single_number():
    assert card("1") == Cardinality(min=1, max=1)


def test_str_round_trips_the_notation():
    assert str(card("0..1")) == "0..1"
    assert str(card("2..*")) == "2..*"


def test_max_lower_than_min_is_rejected():
    with pytest.raises(ValidationError):
        Cardinality(min=2, max=1)


def test_from_fhir():
    assert Cardinality.from_fhir(1, "*") == Cardinality(min=1, max=None)
    assert Cardinality.from_fhir(None, "0").is_zeroed_out


@pytest.mark.parametrize(
    "inner, outer, expected",
    [
        ("1..1", "0..*", True),
        ("0..5", "1..3", False),
        ("1..3", "0..3", True),
        ("0..*", "0..1", False),
        ("1..*", "0..*", True),
        ("0..0", "0..1", True),
    ],
)
def test_fits_within(inner, outer, expected):
    assert card(inner).fits_within(card(outer)) is expected


def test_aggregate_with_unbounded_parent():
    assert aggregate_cardinality(card("0..*"), card("1..1")) == card("0..*")


def test_aggregate_multiplies_bounds():
    assert aggregate_cardinality(card("2..3"), card("0..1")) == card("0..3")


def test_aggregate_of_single_cardinality_is_itself():
    assert aggregate_cardinality(card("1..1")) == card("1..1")


def test_aggregate_zeroed_out_collapses_chain():
    assert aggregate_cardinality(card("1..*"), card("0..0"), card("1..1")) == card("0..0")


def test_aggregate_of_nothing():
    assert aggregate_cardinality() is None

"""Tests for parameter spaces and value tagging."""

import json
from decimal import Decimal

import pytest

from optimization.engine.exceptions import ConfigError, ParameterSpaceError
from optimization.engine.parameter_space import (
    ParameterSpace,
    Symbol,
    ValueTag,
    combination_key,
    combination_from_storable,
    combination_to_storable,
    decode_value,
    encode_value,
    value_tag,
)


@pytest.fixture
def space():
    """Two scores x two grade filters."""
    return ParameterSpace(
        {
            "signal_grade_filter": [Symbol("all"), Symbol("a_only")],
            "min_confluence_score": [6, 7],
        }
    )


class TestConstruction:
    def test_count(self, space):
        assert space.count() == 4
        assert len(space) == 4

    def test_count_is_product(self):
        space = ParameterSpace({"a": [1, 2, 3], "b": [1, 2], "c": [True, False]})
        assert space.count() == 12

    def test_names_sorted(self, space):
        assert space.param_names == ("min_confluence_score", "signal_grade_filter")

    def test_default_grid(self):
        space = ParameterSpace.default()
        assert space.count() == 5 * 4 * 4 * 3
        assert space.get_values("signal_grade_filter")[-1] == Symbol("a_only")

    @pytest.mark.parametrize(
        "params, param",
        [
            ({"min_rr": []}, "min_rr"),
            ({"min_rr": (2.0, 2.5)}, "min_rr"),
            ({"min_rr": [2.0], "score": [[6]]}, "score"),
            ({"": [1]}, ""),
        ],
    )
    def test_invalid_values(self, params, param):
        with pytest.raises(ParameterSpaceError) as exc_info:
            ParameterSpace(params)
        assert exc_info.value.param == param

    def test_empty_space(self):
        with pytest.raises(ParameterSpaceError):
            ParameterSpace({})

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError):
            ParameterSpace([("min_rr", [2.0])])

    def test_put_and_remove(self, space):
        bigger = space.put_param("min_rr", [Decimal("2.0"), Decimal("2.5"), Decimal("3.0")])
        assert bigger.count() == 12
        assert space.count() == 4
        assert bigger.remove_param("min_rr") == space
        assert space.get_values("min_rr") is None

    def test_remove_last_param(self):
        with pytest.raises(ParameterSpaceError):
            ParameterSpace({"min_rr": [2.0]}).remove_param("min_rr")

    def test_summary(self, space):
        summary = space.summary()
        assert "min_confluence_score: [6, 7]" in summary
        assert "Total combinations: 4" in summary


class TestEnumeration:
    def test_order_rightmost_fastest(self, space):
        assert space.combinations() == [
            {"min_confluence_score": 6, "signal_grade_filter": Symbol("all")},
            {"min_confluence_score": 6, "signal_grade_filter": Symbol("a_only")},
            {"min_confluence_score": 7, "signal_grade_filter": Symbol("all")},
            {"min_confluence_score": 7, "signal_grade_filter": Symbol("a_only")},
        ]

    def test_lazy_matches_eager(self):
        space = ParameterSpace({"a": [1, 2, 3], "b": ["x", "y"], "c": [Decimal("0.1"), Decimal("0.2")]})
        assert list(space.lazy_combinations()) == space.combinations()
        assert list(space) == space.combinations()

    def test_lazy_is_restartable(self, space):
        assert list(space.lazy_combinations()) == list(space.lazy_combinations())

    def test_single_value(self):
        assert ParameterSpace({"a": [1]}).combinations() == [{"a": 1}]

    def test_combinations_unique(self):
        combos = ParameterSpace.default().combinations()
        assert len({combination_key(c) for c in combos}) == len(combos)

    def test_limit(self, space):
        assert len(space.combinations(limit=3)) == 3
        assert space.combinations(limit=0) == []
        assert len(space.combinations(limit=100)) == 4

    def test_negative_limit(self, space):
        with pytest.raises(ValueError):
            space.combinations(limit=-1)

    def test_shuffle_is_permutation(self):
        space = ParameterSpace.default()
        shuffled = space.combinations(shuffle=True, seed=7)
        assert shuffled != space.combinations()
        assert sorted(map(combination_key, shuffled)) == sorted(map(combination_key, space.combinations()))

    def test_shuffle_seed_reproducible(self):
        space = ParameterSpace.default()
        assert space.combinations(shuffle=True, seed=3) == space.combinations(shuffle=True, seed=3)


class TestValueTags:
    def test_tags(self):
        assert value_tag(Decimal("0.01")) is ValueTag.DECIMAL
        assert value_tag(Symbol("all")) is ValueTag.SYMBOL
        assert value_tag(2.5) is ValueTag.RAW
        assert value_tag("all") is ValueTag.RAW

    def test_unsupported(self):
        with pytest.raises(TypeError):
            value_tag(None)

    def test_encode(self):
        assert encode_value(Decimal("0.01")) == {"_type": "decimal", "value": "0.01"}
        assert encode_value(Symbol("a_only")) == {"_type": "symbol", "value": "a_only"}
        assert encode_value(7) == 7

    def test_decode_unknown_tag(self):
        with pytest.raises(ParameterSpaceError) as exc_info:
            decode_value({"_type": "complex", "value": "1+2j"}, "min_rr")
        assert exc_info.value.param == "min_rr"

    def test_decode_bad_decimal(self):
        with pytest.raises(ParameterSpaceError):
            decode_value({"_type": "decimal", "value": "abc"})

    def test_symbol_distinct_from_string(self):
        assert Symbol("all") != "all"
        assert combination_key({"g": Symbol("all")}) != combination_key({"g": "all"})

    def test_decimal_precision_is_identity(self):
        """0.010 and 0.01 are kept apart so the stored grid matches what was configured."""
        assert combination_key({"r": Decimal("0.010")}) != combination_key({"r": Decimal("0.01")})


class TestStorable:
    def test_round_trip_through_json(self):
        space = ParameterSpace(
            {
                "min_rr": [Decimal("2.0"), Decimal("2.5")],
                "signal_grade_filter": [Symbol("all"), Symbol("a_only")],
                "min_confluence_score": [6, 7],
                "entry_model": ["aggressive"],
                "use_filter": [True],
            }
        )
        stored = json.loads(json.dumps(space.to_storable()))
        restored = ParameterSpace.from_storable(stored)
        assert restored == space
        assert restored.get_values("min_rr") == [Decimal("2.0"), Decimal("2.5")]
        assert restored.get_values("signal_grade_filter") == [Symbol("all"), Symbol("a_only")]
        assert restored.get_values("entry_model") == ["aggressive"]

    def test_decimal_and_symbol_stay_distinct(self):
        space = ParameterSpace({"x": [Decimal("0.01"), Symbol("0.01"), "0.01"]})
        restored = ParameterSpace.from_storable(json.loads(json.dumps(space.to_storable())))
        assert restored.get_values("x") == [Decimal("0.01"), Symbol("0.01"), "0.01"]
        assert [type(v) for v in restored.get_values("x")] == [Decimal, Symbol, str]

    def test_storable_form(self):
        stored = ParameterSpace({"risk_per_trade": [Decimal("0.01")], "grade": [Symbol("all")]}).to_storable()
        assert stored == {
            "grade": [{"_type": "symbol", "value": "all"}],
            "risk_per_trade": [{"_type": "decimal", "value": "0.01"}],
        }

    def test_from_storable_unknown_tag(self):
        with pytest.raises(ParameterSpaceError):
            ParameterSpace.from_storable({"min_rr": [{"_type": "fraction", "value": "1/2"}]})

    def test_combination_round_trip(self):
        combo = {"min_rr": Decimal("2.5"), "signal_grade_filter": Symbol("b_and_above"), "score": 7}
        assert combination_from_storable(combination_to_storable(combo)) == combo

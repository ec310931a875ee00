"""Parameter spaces: candidate values per tunable parameter and their combinations.

A ParameterSpace maps each parameter name to a non-empty list of candidate
values and enumerates the cartesian product of those lists. Enumeration always
walks parameter names in sorted order with the rightmost name varying fastest,
so eager and lazy enumeration yield identical sequences.

Candidate values are scalars of three kinds, distinguished by ``ValueTag``:
raw JSON scalars (int, float, str, bool), fixed-precision ``Decimal`` values,
and ``Symbol`` tags. The storable form keeps the tag explicitly so that
``Decimal("0.01")`` and ``Symbol("0.01")`` survive a round trip through JSON.
"""

import itertools
import math
import random
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from optimization.engine.exceptions import ParameterSpaceError

# Parameters understood by the strategy and options simulators.
VALID_PARAMS = (
    "min_confluence_score",
    "min_risk_reward",
    "signal_grade_filter",
    "entry_model",
    "risk_per_trade",
    "time_exit_hour",
    "max_daily_trades",
    "min_rr",
    "instrument_type",
    "expiration_preference",
    "strike_selection",
    "slippage_pct",
    "premium_target_multiple",
    "premium_floor_pct",
)


@dataclass(frozen=True, order=True)
class Symbol:
    """A symbolic tag value, e.g. ``Symbol("a_only")``.

    Symbols compare equal only to other symbols with the same name, never to
    plain strings or decimals.
    """

    name: str

    def __str__(self) -> str:
        return self.name


class ValueTag(Enum):
    """Kind of a candidate parameter value."""

    RAW = "raw"
    DECIMAL = "decimal"
    SYMBOL = "symbol"


def value_tag(value: Any) -> ValueTag:
    """Return the tag for a candidate value.

    Raises:
        TypeError: If the value is not a supported scalar.
    """
    if isinstance(value, Symbol):
        return ValueTag.SYMBOL
    if isinstance(value, Decimal):
        return ValueTag.DECIMAL
    if isinstance(value, (bool, int, float, str)):
        return ValueTag.RAW
    raise TypeError(f"unsupported parameter value {value!r} of type {type(value).__name__}")


def encode_value(value: Any) -> Any:
    """Encode a candidate value into its storable, JSON-compatible form."""
    tag = value_tag(value)
    if tag is ValueTag.DECIMAL:
        return {"_type": ValueTag.DECIMAL.value, "value": str(value)}
    if tag is ValueTag.SYMBOL:
        return {"_type": ValueTag.SYMBOL.value, "value": value.name}
    return value


def decode_value(stored: Any, param: str | None = None) -> Any:
    """Decode a storable value back into a candidate value.

    Args:
        stored: Tagged dict or raw scalar produced by ``encode_value``.
        param: Parameter name, used for error messages.

    Raises:
        ParameterSpaceError: If the tag is unknown or the payload is malformed.
    """
    if isinstance(stored, Mapping):
        tag = stored.get("_type")
        raw = stored.get("value")
        if not isinstance(raw, str):
            raise ParameterSpaceError(param, f"tagged value must carry a string 'value', got {stored!r}")
        if tag == ValueTag.DECIMAL.value:
            try:
                return Decimal(raw)
            except InvalidOperation as exc:
                raise ParameterSpaceError(param, f"invalid decimal {raw!r}") from exc
        if tag == ValueTag.SYMBOL.value:
            return Symbol(raw)
        raise ParameterSpaceError(param, f"unknown value type tag {tag!r}")
    try:
        value_tag(stored)
    except TypeError as exc:
        raise ParameterSpaceError(param, str(exc)) from exc
    return stored


def combination_key(combination: Mapping[str, Any]) -> tuple:
    """Hashable, type-aware identity of a combination.

    Two combinations share a key only if every parameter holds a value of the
    same kind and the same exact representation.
    """
    parts = []
    for name in sorted(combination):
        value = combination[name]
        tag = value_tag(value)
        if tag is ValueTag.RAW:
            parts.append((name, tag.value, type(value).__name__, value))
        else:
            parts.append((name, tag.value, str(value)))
    return tuple(parts)


def combination_to_storable(combination: Mapping[str, Any]) -> dict[str, Any]:
    """Encode every value of a combination for storage."""
    return {name: encode_value(combination[name]) for name in sorted(combination)}


def combination_from_storable(stored: Mapping[str, Any]) -> dict[str, Any]:
    """Inverse of ``combination_to_storable``."""
    return {name: decode_value(value, name) for name, value in stored.items()}


def format_combination(combination: Mapping[str, Any]) -> str:
    """Compact ``name=value`` rendering used in logs."""
    return ", ".join(f"{name}={combination[name]}" for name in sorted(combination))


class ParameterSpace:
    """Immutable set of candidate values for each tunable parameter.

    Example:
        >>> space = ParameterSpace({"min_rr": [Decimal("2.0"), Decimal("2.5")],
        ...                         "signal_grade_filter": [Symbol("all"), Symbol("a_only")]})
        >>> space.count()
        4
    """

    def __init__(self, params: Mapping[str, list]) -> None:
        """Create a parameter space.

        Args:
            params: Mapping of parameter name to a non-empty list of values.

        Raises:
            ParameterSpaceError: If the mapping is empty, a name is not a string,
                a value list is not a list or is empty, or a value is not a
                supported scalar. The first offending parameter is named.
        """
        _validate_params(params)
        self._params: dict[str, list] = {name: list(params[name]) for name in sorted(params)}
        self._names: tuple[str, ...] = tuple(self._params)
        self._total = math.prod(len(values) for values in self._params.values())

    @classmethod
    def default(cls) -> "ParameterSpace":
        """Standard strategy grid with common optimization ranges."""
        return cls(
            {
                "min_confluence_score": [5, 6, 7, 8, 9],
                "min_rr": [Decimal("1.5"), Decimal("2.0"), Decimal("2.5"), Decimal("3.0")],
                "signal_grade_filter": [
                    Symbol("all"),
                    Symbol("c_and_above"),
                    Symbol("b_and_above"),
                    Symbol("a_only"),
                ],
                "risk_per_trade": [Decimal("0.01"), Decimal("0.015"), Decimal("0.02")],
            }
        )

    @property
    def param_names(self) -> tuple[str, ...]:
        """Parameter names in enumeration (sorted) order."""
        return self._names

    @property
    def parameters(self) -> dict[str, list]:
        """Copy of the name -> values mapping."""
        return {name: list(values) for name, values in self._params.items()}

    def count(self) -> int:
        """Total number of combinations (product of value-list lengths)."""
        return self._total

    def __len__(self) -> int:
        return self._total

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return self.lazy_combinations()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParameterSpace):
            return NotImplemented
        return self._tagged() == other._tagged()

    def __repr__(self) -> str:
        sizes = ", ".join(f"{name}:{len(values)}" for name, values in self._params.items())
        return f"ParameterSpace({sizes}; {self._total} combinations)"

    def get_values(self, name: str) -> list | None:
        """Candidate values for ``name``, or None if the parameter is absent."""
        values = self._params.get(name)
        return list(values) if values is not None else None

    def put_param(self, name: str, values: list) -> "ParameterSpace":
        """Return a new space with ``name`` added or replaced."""
        return ParameterSpace({**self._params, name: values})

    def remove_param(self, name: str) -> "ParameterSpace":
        """Return a new space without ``name``.

        Raises:
            ParameterSpaceError: If removing ``name`` would leave the space empty.
        """
        return ParameterSpace({k: v for k, v in self._params.items() if k != name})

    def combinations(
        self,
        shuffle: bool = False,
        limit: int | None = None,
        seed: int | None = None,
    ) -> list[dict[str, Any]]:
        """Materialize all combinations.

        Args:
            shuffle: Randomize the order of the combinations.
            limit: Keep at most this many combinations (applied after shuffling).
            seed: Seed for the shuffle, for reproducible orderings.

        Returns:
            List of dicts mapping each parameter name to one value.
        """
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")

        value_lists = [self._params[name] for name in self._names]
        combos = [dict(zip(self._names, values, strict=True)) for values in itertools.product(*value_lists)]

        if shuffle:
            random.Random(seed).shuffle(combos)
        if limit is not None:
            combos = combos[:limit]
        return combos

    def lazy_combinations(self) -> Iterator[dict[str, Any]]:
        """Yield combinations one at a time, in the same order as ``combinations()``.

        The value lists are treated as the digits of a mixed-radix counter; after
        each combination the rightmost digit is incremented and carries leftward.
        Every call returns a fresh iterator.
        """
        names = self._names
        value_lists = [self._params[name] for name in names]
        indices = [0] * len(value_lists)

        while True:
            yield {name: values[i] for name, values, i in zip(names, value_lists, indices, strict=True)}

            pos = len(indices) - 1
            while pos >= 0:
                indices[pos] += 1
                if indices[pos] < len(value_lists[pos]):
                    break
                indices[pos] = 0
                pos -= 1
            if pos < 0:
                return

    def to_storable(self) -> dict[str, list]:
        """Serialize to a JSON-compatible mapping with tagged values."""
        return {name: [encode_value(v) for v in values] for name, values in self._params.items()}

    @classmethod
    def from_storable(cls, stored: Mapping[str, Any]) -> "ParameterSpace":
        """Rebuild a space from ``to_storable`` output.

        Raises:
            ParameterSpaceError: If the mapping or any tagged value is malformed.
        """
        if not isinstance(stored, Mapping):
            raise ParameterSpaceError(None, f"stored grid must be a mapping, got {type(stored).__name__}")
        params = {}
        for name, values in stored.items():
            if not isinstance(values, list):
                raise ParameterSpaceError(name, "values must be a list")
            params[name] = [decode_value(v, name) for v in values]
        return cls(params)

    def summary(self) -> str:
        """Human-readable description of the space."""
        lines = ["Parameter Space:"]
        for name, values in self._params.items():
            lines.append(f"  {name}: [{', '.join(str(v) for v in values)}]")
        lines.append("")
        lines.append(f"Total combinations: {self._total}")
        return "\n".join(lines)

    def _tagged(self) -> dict[str, list[tuple]]:
        return {
            name: [combination_key({name: v})[0][1:] for v in values]
            for name, values in self._params.items()
        }


def _validate_params(params: Any) -> None:
    if not isinstance(params, Mapping):
        raise ParameterSpaceError(None, f"parameters must be a mapping, got {type(params).__name__}")
    if not params:
        raise ParameterSpaceError(None, "parameter space is empty")

    for name in sorted(params, key=str):
        if not isinstance(name, str) or not name:
            raise ParameterSpaceError(str(name), "parameter name must be a non-empty string")
        values = params[name]
        if not isinstance(values, list):
            raise ParameterSpaceError(name, f"values must be a list, got {type(values).__name__}")
        if not values:
            raise ParameterSpaceError(name, "values must not be empty")
        for value in values:
            try:
                value_tag(value)
            except TypeError as exc:
                raise ParameterSpaceError(name, str(exc)) from exc

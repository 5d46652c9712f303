from __future__ import annotations

from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Union

PRECISION = 60

NumberLike = Union["NumericValue", Decimal, int, float, str]


def to_decimal(value: NumberLike) -> Decimal:
    if isinstance(value, NumericValue):
        return value.value
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # repr keeps the shortest round-tripping form instead of the binary expansion
        return Decimal(repr(value))
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a numeric value: {value!r}") from exc


class NumericValue:
    """Arbitrary precision decimal used for scaled on-chain integers.

    Every operation runs in a local decimal context with PRECISION significant
    digits, so ray-scaled (1e27) indices divide without float drift.
    """

    __slots__ = ("value",)

    def __init__(self, value: NumberLike = 0) -> None:
        self.value = to_decimal(value)

    @classmethod
    def from_onchain(cls, raw: NumberLike, decimals: int) -> NumericValue:
        with localcontext() as ctx:
            ctx.prec = PRECISION
            return cls(to_decimal(raw).scaleb(-int(decimals)))

    def to_onchain(self, decimals: int) -> str:
        with localcontext() as ctx:
            ctx.prec = PRECISION
            return str(self.value.scaleb(int(decimals)).quantize(Decimal(1)))

    def plus(self, other: NumberLike) -> NumericValue:
        return self._apply(other, lambda a, b: a + b)

    def minus(self, other: NumberLike) -> NumericValue:
        return self._apply(other, lambda a, b: a - b)

    def times(self, other: NumberLike) -> NumericValue:
        return self._apply(other, lambda a, b: a * b)

    def div(self, other: NumberLike) -> NumericValue:
        divisor = to_decimal(other)
        if divisor == 0:
            raise ZeroDivisionError("NumericValue division by zero")
        return self._apply(divisor, lambda a, b: a / b)

    def pow(self, exponent: NumberLike) -> NumericValue:
        exp = to_decimal(exponent)
        if exp != exp.to_integral_value() and self.value < 0:
            raise ValueError("Fractional power of a negative value")
        return self._apply(exp, lambda a, b: a**b)

    def is_zero(self) -> bool:
        return self.value == 0

    def to_float(self) -> float:
        return float(self.value)

    def to_fixed(self, places: int) -> str:
        return f"{self.value:.{places}f}"

    def _apply(self, other: NumberLike, op) -> NumericValue:
        with localcontext() as ctx:
            ctx.prec = PRECISION
            return NumericValue(op(self.value, to_decimal(other)))

    def __add__(self, other: NumberLike) -> NumericValue:
        return self.plus(other)

    def __radd__(self, other: NumberLike) -> NumericValue:
        return NumericValue(other).plus(self)

    def __sub__(self, other: NumberLike) -> NumericValue:
        return self.minus(other)

    def __rsub__(self, other: NumberLike) -> NumericValue:
        return NumericValue(other).minus(self)

    def __mul__(self, other: NumberLike) -> NumericValue:
        return self.times(other)

    def __rmul__(self, other: NumberLike) -> NumericValue:
        return NumericValue(other).times(self)

    def __truediv__(self, other: NumberLike) -> NumericValue:
        return self.div(other)

    def __neg__(self) -> NumericValue:
        return NumericValue(-self.value)

    def __eq__(self, other: Any) -> bool:
        try:
            return self.value == to_decimal(other)
        except (ValueError, TypeError):
            return NotImplemented

    def __lt__(self, other: NumberLike) -> bool:
        return self.value < to_decimal(other)

    def __le__(self, other: NumberLike) -> bool:
        return self.value <= to_decimal(other)

    def __gt__(self, other: NumberLike) -> bool:
        return self.value > to_decimal(other)

    def __ge__(self, other: NumberLike) -> bool:
        return self.value >= to_decimal(other)

    def __hash__(self) -> int:
        return hash(self.value)

    def __float__(self) -> float:
        return self.to_float()

    def __str__(self) -> str:
        return str(self.value)

    def __repr__(self) -> str:
        return f"NumericValue('{self.value}')"

from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from .errors import ValidationError

CentsLike = Union[int, "Money"]


def _coerce(value) -> int:
    if isinstance(value, Money):
        return value.cents
    # bool is an int subclass; True is never an amount
    if isinstance(value, bool):
        raise ValidationError(f"Invalid money amount: {value!r}", reason="invalid_amount")
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
        return int(value)
    raise ValidationError(
        f"Money must be integer cents, got {type(value).__name__} {value!r}",
        reason="invalid_amount",
    )


@dataclass(frozen=True, order=True)
class Money:
    """Integer amount in minor currency units (cents)."""

    cents: int

    def __post_init__(self):
        object.__setattr__(self, "cents", _coerce(self.cents))

    @classmethod
    def of(cls, value: CentsLike) -> "Money":
        return value if isinstance(value, Money) else cls(value)

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    def __add__(self, other: CentsLike) -> "Money":
        return Money(self.cents + _coerce(other))

    __radd__ = __add__

    def __sub__(self, other: CentsLike) -> "Money":
        return Money(self.cents - _coerce(other))

    def __rsub__(self, other: CentsLike) -> "Money":
        return Money(_coerce(other) - self.cents)

    def __neg__(self) -> "Money":
        return Money(-self.cents)

    def __abs__(self) -> "Money":
        return Money(abs(self.cents))

    def __int__(self) -> int:
        return self.cents

    def __bool__(self) -> bool:
        return self.cents != 0

    def is_zero(self) -> bool:
        return self.cents == 0

    def is_positive(self) -> bool:
        return self.cents > 0

    def percent(self, pct: int) -> "Money":
        """Floor of ``pct`` percent, in whole cents."""
        return Money((self.cents * _coerce(pct)) // 100)

    def format(self, symbol: str = "$") -> str:
        sign = "-" if self.cents < 0 else ""
        whole, frac = divmod(abs(self.cents), 100)
        return f"{sign}{symbol}{whole}.{frac:02d}"

    def __str__(self) -> str:
        return self.format()


def platform_fee(amount: CentsLike, fee_percent: int = 20) -> Money:
    return Money.of(amount).percent(fee_percent)


def net_amount(amount: CentsLike, fee_percent: int = 20) -> Money:
    amount = Money.of(amount)
    return amount - platform_fee(amount, fee_percent)

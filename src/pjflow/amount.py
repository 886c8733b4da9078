"""Amount and fee-rate helpers using integer satoshi precision."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import ClassVar

from .errors import InvalidInput


SATS_PER_BTC = 100_000_000
MAX_MONEY = 21_000_000 * SATS_PER_BTC
_BTC_QUANT = Decimal("0.00000001")
WITNESS_SCALE_FACTOR = 4


def _to_decimal(value: Decimal | int | str) -> Decimal:
    if isinstance(value, float):
        raise InvalidInput(f"Amounts must be Decimal, int or str, not float: {value!r}")
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise InvalidInput(f"Invalid amount: {value!r}") from e
    if not dec.is_finite():
        raise InvalidInput(f"Invalid amount: {value!r}")
    return dec


def btc_to_sat(value: Decimal | int | str) -> int:
    """Convert a BTC amount to satoshis exactly; more than 8 decimals is an error."""
    dec = _to_decimal(value)
    if dec.quantize(_BTC_QUANT, rounding=ROUND_FLOOR) != dec:
        raise InvalidInput(f"Amount {value} has more than 8 decimal places")
    return check_sat(int(dec * SATS_PER_BTC))


def sat_to_btc(value: int) -> Decimal:
    """Convert integer satoshis to Decimal BTC."""
    return (Decimal(check_sat(value)) / Decimal(SATS_PER_BTC)).quantize(_BTC_QUANT)


def format_btc(value: int) -> str:
    """BIP21 amount string: no exponent, trailing zeros stripped."""
    text = f"{sat_to_btc(value):f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def check_sat(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"Amount must be integer satoshis, got {type(value).__name__}")
    if value < 0 or value > MAX_MONEY:
        raise InvalidInput(f"Amount {value} sat is out of range")
    return value


@dataclass(frozen=True, order=True)
class FeeRate:
    """Fee rate in satoshis per 1000 weight units."""

    sat_per_kwu: int

    ZERO: ClassVar["FeeRate"]

    @classmethod
    def from_sat_per_vb(cls, value: Decimal | int | str) -> "FeeRate":
        dec = _to_decimal(value)
        if dec < 0:
            raise InvalidInput(f"Fee rate must not be negative: {value}")
        # 1 vB = 4 WU, so sat/vB * 1000 / 4 = sat/kwu
        return cls(int((dec * 250).to_integral_value(rounding=ROUND_FLOOR)))

    @classmethod
    def from_fee_and_weight(cls, fee: int, weight: int) -> "FeeRate":
        if weight <= 0:
            raise InvalidInput("Weight must be positive")
        return cls(fee * 1000 // weight)

    def to_sat_per_vb(self) -> Decimal:
        return Decimal(self.sat_per_kwu) / Decimal(250)

    def fee_for_weight(self, weight: int) -> int:
        """Fee needed for `weight` at this rate, rounded up."""
        return -(-self.sat_per_kwu * weight // 1000)

    def __str__(self) -> str:
        return f"{self.to_sat_per_vb().normalize():f} sat/vB"


FeeRate.ZERO = FeeRate(0)


def coerce_fee_rate(value) -> FeeRate:
    """Accept a FeeRate, a sat/vB number or string, or None (zero)."""
    if value is None:
        return FeeRate.ZERO
    if isinstance(value, FeeRate):
        return value
    return FeeRate.from_sat_per_vb(value)


def weight_to_vsize(weight: int) -> int:
    return (weight + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR

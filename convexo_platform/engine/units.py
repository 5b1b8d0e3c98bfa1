"""
Fixed-Point Unit Conversion
===========================

Conversion between human-readable decimal amounts and the fixed-point integer
representation every contract field uses.

Conventions
-----------
- Token (USDC) amounts carry 6 decimal places.
- Vault (CVXS) shares carry 18 decimal places.
- Interest, fee and yield rates are basis points: 4 implied decimal places,
  so ``value / 10000`` is the rate as a fraction.

Conversion never rounds silently. :func:`to_fixed_point` rejects input with
more fractional digits than the target precision; callers who really want to
drop digits must say so with :func:`truncate_to_fixed_point`.

Text produced by :func:`from_fixed_point` is canonical: no exponent, no
trailing fractional zeros, no trailing dot (``"1150"``, ``"0.5"``). Any
canonical string with at most ``decimals`` fractional digits survives the
round trip unchanged.

Examples
--------
>>> to_fixed_point("1000.25", TOKEN_DECIMALS)
LedgerAmount(value=1000250000, decimals=6)
>>> from_fixed_point(LedgerAmount(1000250000, 6), 6)
'1000.25'
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, localcontext
from functools import total_ordering
from typing import Tuple, Union

from ..errors import InvalidAmountError

TOKEN_DECIMALS = 6
SHARE_DECIMALS = 18
BPS_DECIMALS = 4
BPS_DENOMINATOR = 10 ** BPS_DECIMALS

AmountInput = Union[str, Decimal, int]

_DECIMAL_RE = re.compile(r"^([0-9]+)(?:\.([0-9]+))?$")


@total_ordering
@dataclass(frozen=True, eq=False)
class LedgerAmount:
    """
    A non-negative integer tagged with its decimal-places count.

    Comparison and arithmetic between two amounts first reconcile decimal
    places exactly (by scaling the coarser one up), so ``LedgerAmount(1, 0)``
    equals ``LedgerAmount(1_000_000, 6)``.

    Attributes
    ----------
    value : int
        Raw integer units as stored on-chain.
    decimals : int
        Number of implied decimal places.
    """

    value: int
    decimals: int

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise InvalidAmountError(f"Ledger amount must be an integer, got {type(self.value).__name__}")
        if self.value < 0:
            raise InvalidAmountError(f"Ledger amount cannot be negative: {self.value}")
        if isinstance(self.decimals, bool) or not isinstance(self.decimals, int) or self.decimals < 0:
            raise InvalidAmountError(f"Invalid decimal places: {self.decimals!r}")

    @classmethod
    def zero(cls, decimals: int) -> "LedgerAmount":
        return cls(0, decimals)

    @property
    def is_zero(self) -> bool:
        return self.value == 0

    def rescale(self, decimals: int) -> "LedgerAmount":
        """
        Express the same quantity with a different number of decimal places.

        Scaling up is always exact. Scaling down is only allowed when no
        non-zero digits are lost; otherwise :class:`InvalidAmountError`.
        """
        if decimals == self.decimals:
            return self
        if decimals > self.decimals:
            return LedgerAmount(self.value * 10 ** (decimals - self.decimals), decimals)
        factor = 10 ** (self.decimals - decimals)
        if self.value % factor:
            raise InvalidAmountError(
                f"Cannot express {from_fixed_point(self, self.decimals)} with {decimals} decimal places without truncation"
            )
        return LedgerAmount(self.value // factor, decimals)

    def to_decimal(self) -> Decimal:
        """Exact Decimal value (no float conversion)."""
        with localcontext() as ctx:
            ctx.prec = max(len(str(self.value)), 1) + 1
            return Decimal(self.value).scaleb(-self.decimals)

    def _aligned(self, other: "LedgerAmount") -> Tuple[int, int, int]:
        if not isinstance(other, LedgerAmount):
            raise TypeError(f"Cannot combine LedgerAmount with {type(other).__name__}")
        decimals = max(self.decimals, other.decimals)
        return self.rescale(decimals).value, other.rescale(decimals).value, decimals

    def __add__(self, other: "LedgerAmount") -> "LedgerAmount":
        left, right, decimals = self._aligned(other)
        return LedgerAmount(left + right, decimals)

    def __sub__(self, other: "LedgerAmount") -> "LedgerAmount":
        left, right, decimals = self._aligned(other)
        if right > left:
            raise InvalidAmountError("Ledger amount subtraction would go negative")
        return LedgerAmount(left - right, decimals)

    def saturating_sub(self, other: "LedgerAmount") -> "LedgerAmount":
        """Subtract, flooring at zero."""
        left, right, decimals = self._aligned(other)
        return LedgerAmount(max(0, left - right), decimals)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LedgerAmount):
            return NotImplemented
        left, right, _ = self._aligned(other)
        return left == right

    def __lt__(self, other: "LedgerAmount") -> bool:
        if not isinstance(other, LedgerAmount):
            return NotImplemented
        left, right, _ = self._aligned(other)
        return left < right

    def __hash__(self) -> int:
        value, decimals = self.value, self.decimals
        while decimals and value % 10 == 0:
            value //= 10
            decimals -= 1
        return hash((value, decimals))

    def __str__(self) -> str:
        return from_fixed_point(self, self.decimals)

    def __repr__(self) -> str:
        return f"LedgerAmount(value={self.value}, decimals={self.decimals})"


def _split_decimal(amount: AmountInput) -> Tuple[str, str]:
    """Validate input and split it into integer and fractional digit strings."""
    if isinstance(amount, bool) or isinstance(amount, float):
        raise InvalidAmountError(f"Amounts must be given as str, Decimal or int, not {type(amount).__name__}")
    if isinstance(amount, int):
        if amount < 0:
            raise InvalidAmountError(f"Amount cannot be negative: {amount}")
        return str(amount), ""
    if isinstance(amount, Decimal):
        if not amount.is_finite():
            raise InvalidAmountError(f"Amount must be finite: {amount}")
        if amount.is_signed() and amount != 0:
            raise InvalidAmountError(f"Amount cannot be negative: {amount}")
        text = format(amount.copy_abs(), "f")
    elif isinstance(amount, str):
        text = amount.strip()
    else:
        raise InvalidAmountError(f"Unsupported amount type: {type(amount).__name__}")

    if text.startswith("-"):
        raise InvalidAmountError(f"Amount cannot be negative: {amount!r}")
    match = _DECIMAL_RE.match(text)
    if match is None:
        raise InvalidAmountError(f"Malformed decimal amount: {amount!r}")
    return match.group(1), match.group(2) or ""


def to_fixed_point(amount: AmountInput, decimals: int) -> LedgerAmount:
    """
    Convert a human decimal amount to fixed-point integer units.

    Parameters
    ----------
    amount : str, Decimal or int
        Non-negative decimal value, e.g. ``"1000.50"``. Floats are rejected.
    decimals : int
        Target decimal places (6 for tokens, 18 for shares, 4 for bps).

    Returns
    -------
    LedgerAmount

    Raises
    ------
    InvalidAmountError
        On malformed or negative input, or when the value has more fractional
        digits than ``decimals`` allows.
    """
    whole, fraction = _split_decimal(amount)
    significant = fraction.rstrip("0")
    if len(significant) > decimals:
        raise InvalidAmountError(
            f"Amount {amount!r} has more than {decimals} decimal places; use truncate_to_fixed_point to drop digits"
        )
    padded = significant.ljust(decimals, "0")
    return LedgerAmount(int(whole + padded) if decimals else int(whole), decimals)


def truncate_to_fixed_point(amount: AmountInput, decimals: int) -> LedgerAmount:
    """
    Convert to fixed-point units, discarding digits beyond ``decimals``.

    This is the only conversion in the package that loses precision.
    """
    whole, fraction = _split_decimal(amount)
    return to_fixed_point(f"{whole}.{fraction[:decimals]}" if decimals and fraction else whole, decimals)


def from_fixed_point(amount: Union[LedgerAmount, int], decimals: int) -> str:
    """
    Render fixed-point units as a canonical decimal string.

    A :class:`LedgerAmount` tagged with different decimals is reconciled
    first; a raw int is taken to already be in ``decimals`` units.
    """
    if isinstance(amount, LedgerAmount):
        value = amount.rescale(decimals).value
    else:
        value = LedgerAmount(amount, decimals).value

    if decimals == 0:
        return str(value)
    whole, fraction = divmod(value, 10 ** decimals)
    fraction_text = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{fraction_text}" if fraction_text else str(whole)


def format_amount(amount: LedgerAmount, places: int = 2, thousands_sep: str = ",") -> str:
    """
    Format an amount for display with a fixed number of places.

    Display rounding truncates toward zero so a shown balance never
    overstates what is actually available.
    """
    with localcontext() as ctx:
        ctx.prec = len(str(amount.value)) + places + 1
        shown = amount.to_decimal().quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN)
    formatted = f"{shown:,.{places}f}"
    if thousands_sep != ",":
        formatted = formatted.replace(",", thousands_sep)
    return formatted


def token_amount(amount: AmountInput) -> LedgerAmount:
    """Parse a token (6-decimal) amount."""
    return to_fixed_point(amount, TOKEN_DECIMALS)


def share_amount(amount: AmountInput) -> LedgerAmount:
    """Parse a vault share (18-decimal) amount."""
    return to_fixed_point(amount, SHARE_DECIMALS)


def coerce_amount(amount: Union[AmountInput, LedgerAmount], decimals: int) -> LedgerAmount:
    """
    Accept either an already-converted :class:`LedgerAmount` or human input.

    An existing LedgerAmount is reconciled exactly to ``decimals``.
    """
    if isinstance(amount, LedgerAmount):
        return amount.rescale(decimals)
    return to_fixed_point(amount, decimals)

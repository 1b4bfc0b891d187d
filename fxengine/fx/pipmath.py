from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


def to_decimal(value: float | int | str | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def normalize_pair(pair: str) -> str:
    """Return ``BASE/QUOTE`` for ``EURUSD``, ``eur-usd`` or ``EUR/USD``."""
    norm = str(pair or "").strip().upper()
    if "/" in norm or "-" in norm:
        return norm.replace("-", "/")
    if len(norm) >= 6:
        return f"{norm[:3]}/{norm[3:]}"
    return norm


def compact_pair(pair: str) -> str:
    return normalize_pair(pair).replace("/", "")


def quote_currency(pair: str) -> str:
    norm = normalize_pair(pair)
    if "/" in norm:
        return norm.split("/", 1)[1]
    return ""


def pip_size(pair: str) -> float:
    return 0.01 if quote_currency(pair) == "JPY" else 0.0001


def tick_size(pair: str) -> float:
    return pip_size(pair)


def to_pips(delta: float, pair: str) -> float:
    return float(to_decimal(delta) / to_decimal(pip_size(pair)))


def from_pips(pips: float, pair: str) -> float:
    return float(to_decimal(pips) * to_decimal(pip_size(pair)))


def quantize(value: float | Decimal, scale: int) -> Decimal:
    exponent = Decimal(1).scaleb(-scale)
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def round_to_tick(value: float, tick: float) -> float:
    if tick <= 0:
        return float(value)
    tick_dec = to_decimal(tick)
    steps = quantize(to_decimal(value) / tick_dec, 12).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(quantize(steps * tick_dec, 12))


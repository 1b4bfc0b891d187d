from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal

from fxengine.fx.pipmath import to_decimal


def floor_to_step(value: float, step: float) -> float:
    if step <= 0:
        raise ValueError("step must be > 0")
    step_dec = to_decimal(step)
    steps = (to_decimal(value) / step_dec).to_integral_value(rounding=ROUND_FLOOR)
    return float(steps * step_dec)


def compute_stake(
    balance: float,
    risk_pct: float,
    sl_pips: float,
    pip_value: float,
    size_step: float = 0.01,
) -> float:
    """Stake such that hitting the stop loses ``risk_pct`` percent of ``balance``.

    ``size = floor_to_step(balance * risk_pct / 100 / (sl_pips * pip_value), size_step)``
    """
    if sl_pips <= 0 or pip_value <= 0 or size_step <= 0 or balance <= 0 or risk_pct <= 0:
        return 0.0
    risk_amount = to_decimal(balance) * to_decimal(risk_pct) / Decimal(100)
    per_lot = to_decimal(sl_pips) * to_decimal(pip_value)
    raw_size = risk_amount / per_lot
    return round(floor_to_step(float(raw_size), size_step), 8)

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from fxengine.fx.pipmath import compact_pair


@dataclass(slots=True, frozen=True)
class LastTrade:
    outcome: str
    timestamp: datetime


class PositionLedger(Protocol):
    def todays_pnl_pct(self) -> float: ...

    def last_trade(self) -> LastTrade | None: ...

    def open_positions_count(self) -> int: ...

    def pair_exposure_pct(self, pair: str) -> float: ...


class NullPositionLedger:
    """Ledger for contexts with no trading history: flat, empty, unexposed."""

    def todays_pnl_pct(self) -> float:
        return 0.0

    def last_trade(self) -> LastTrade | None:
        return None

    def open_positions_count(self) -> int:
        return 0

    def pair_exposure_pct(self, pair: str) -> float:
        return 0.0


@dataclass(slots=True)
class InMemoryPositionLedger:
    pnl_pct: float = 0.0
    trade: LastTrade | None = None
    open_positions: int = 0
    exposure_by_pair: dict[str, float] = field(default_factory=dict)

    def todays_pnl_pct(self) -> float:
        return self.pnl_pct

    def last_trade(self) -> LastTrade | None:
        return self.trade

    def open_positions_count(self) -> int:
        return self.open_positions

    def pair_exposure_pct(self, pair: str) -> float:
        return float(self.exposure_by_pair.get(compact_pair(pair), 0.0))

    def record_trade(self, outcome: str, at: datetime) -> None:
        self.trade = LastTrade(outcome=outcome, timestamp=at)

    def set_exposure(self, pair: str, pct: float) -> None:
        self.exposure_by_pair[compact_pair(pair)] = float(pct)

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, List, MutableSet, Optional, Sequence

from reserve_yields.calc.series import market_totals
from reserve_yields.config import ReconciliationConfig
from reserve_yields.db import store
from reserve_yields.errors import ReconciliationMismatch
from reserve_yields.models import Reserve

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    market_key: str
    reliable: bool
    reasons: List[str] = field(default_factory=list)
    live_supply_usd: float = 0.0
    live_borrow_usd: float = 0.0
    historical_supply_usd: float = 0.0
    historical_borrow_usd: float = 0.0
    supply_diff: float = 0.0
    borrow_diff: float = 0.0
    missing_fraction: float = 0.0
    missing_assets: List[str] = field(default_factory=list)
    price_matches: int = 0
    price_mismatches: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def relative_diff(historical: float, live: float) -> float:
    if live == 0:
        return 0.0 if historical == 0 else float("inf")
    return abs(historical - live) / abs(live)


class ReconciliationValidator:
    def __init__(
        self,
        config: ReconciliationConfig | None = None,
        unreliable: Optional[MutableSet[str]] = None,
        conn: sqlite3.Connection | None = None,
        pinned: Iterable[str] = (),
    ) -> None:
        self.config = config or ReconciliationConfig()
        self.unreliable: MutableSet[str] = unreliable if unreliable is not None else set()
        self.conn = conn
        self.pinned = set(pinned)

    def check(
        self,
        market_key: str,
        live: Sequence[Reserve],
        historical: Sequence[Reserve],
    ) -> ReconciliationReport:
        live_totals = market_totals(live)
        hist_totals = market_totals(historical)
        report = ReconciliationReport(
            market_key=market_key,
            reliable=True,
            live_supply_usd=live_totals["total_supply_usd"],
            live_borrow_usd=live_totals["total_borrow_usd"],
            historical_supply_usd=hist_totals["total_supply_usd"],
            historical_borrow_usd=hist_totals["total_borrow_usd"],
        )
        report.supply_diff = relative_diff(report.historical_supply_usd, report.live_supply_usd)
        report.borrow_diff = relative_diff(report.historical_borrow_usd, report.live_borrow_usd)

        historical_by_asset = {reserve.underlying_asset: reserve for reserve in historical}
        for reserve in live:
            match = historical_by_asset.get(reserve.underlying_asset)
            if match is None:
                report.missing_assets.append(reserve.underlying_asset)
                continue
            if relative_diff(match.price_usd, reserve.price_usd) < self.config.price_tolerance:
                report.price_matches += 1
            else:
                report.price_mismatches += 1
        if live:
            report.missing_fraction = len(report.missing_assets) / len(live)

        if report.supply_diff > self.config.max_relative_diff:
            report.reasons.append(f"supply_diff={report.supply_diff:.2%}")
        if report.borrow_diff > self.config.max_relative_diff:
            report.reasons.append(f"borrow_diff={report.borrow_diff:.2%}")
        if report.missing_fraction > self.config.max_missing_fraction:
            report.reasons.append(f"missing_reserves={len(report.missing_assets)}/{len(live)}")
        report.reliable = not report.reasons

        logger.info(
            "Reconciliation market=%s reliable=%s supply_diff=%.4f borrow_diff=%.4f missing=%d price_matches=%d price_mismatches=%d",
            market_key,
            report.reliable,
            report.supply_diff,
            report.borrow_diff,
            len(report.missing_assets),
            report.price_matches,
            report.price_mismatches,
        )
        return report

    def record(self, report: ReconciliationReport) -> None:
        if report.reliable:
            if report.market_key not in self.pinned:
                self.unreliable.discard(report.market_key)
        else:
            self.unreliable.add(report.market_key)
            logger.warning("Flagged unreliable market=%s reasons=%s", report.market_key, ",".join(report.reasons))
        if self.conn is not None:
            store.set_market_reliability(
                self.conn,
                report.market_key,
                report.reliable,
                report.reasons,
                report.to_dict(),
            )

    def audit(
        self,
        market_key: str,
        live: Sequence[Reserve],
        historical: Sequence[Reserve],
    ) -> ReconciliationReport:
        report = self.check(market_key, live, historical)
        self.record(report)
        return report

    def enforce(self, report: ReconciliationReport) -> None:
        if not report.reliable:
            raise ReconciliationMismatch(report.market_key, report.reasons, report.to_dict())

    def is_unreliable(self, market_key: str) -> bool:
        return market_key in self.unreliable

    def is_pinned(self, market_key: str) -> bool:
        return market_key in self.pinned

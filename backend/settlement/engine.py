"""
Settlement engine.

Resolves a final score for an ended event, derives WON/LOST/VOID for every
open full-time MONEYLINE and TOTAL market, writes them through the store's
atomic settle_market (which refuses an already SETTLED market) and hands
one job to the external runner.
"""
from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from typing import Optional

from shared.errors import SettlementError, StoreError, UnknownMarketTypeError
from shared.models.domain import EventRecord, MarketRecord, Score, SelectionRecord
from shared.models.enums import (
    SETTLEMENT_JOB,
    MarketStatus,
    MarketType,
    Outcome,
    SelectionStatus,
    SettlementSource,
)
from shared.publishers import JobQueuePublisher
from shared.store.base import Store
from shared.utils.logging import get_logger
from shared.utils.metrics import EVENTS_SETTLED, MARKETS_SETTLED, MARKETS_UNRESOLVED

from settlement.scores import resolve_score

logger = get_logger(__name__)

_KEY_LINE = re.compile(r"OU([\d.]+)", re.IGNORECASE)
_NAME_LINE = re.compile(r"(\d+(?:\.\d+)?)")
_TEAM_PARAM = re.compile(r"(?:^|&)\s*team=", re.IGNORECASE)


def primary_job_key(event_id: object) -> str:
    return f"auto-settle-{event_id}"


# ── Pure market resolution ──────────────────────────────────────────────
def is_moneyline(market: MarketRecord) -> bool:
    return market.type == MarketType.MONEYLINE or market.market_key.upper() in ("1X2", "ML")


def is_total(market: MarketRecord) -> bool:
    return market.type == MarketType.TOTAL or market.market_key.upper().startswith("OU")


def selection_line(market: MarketRecord, selection: SelectionRecord) -> Optional[float]:
    """Handicap first, then the OU<line> key, then the display name."""
    if selection.handicap is not None:
        return selection.handicap
    match = _KEY_LINE.search(market.market_key)
    if match:
        try:
            return float(match.group(1))
        except ValueError:
            pass
    match = _NAME_LINE.search(selection.name or "")
    return float(match.group(1)) if match else None


def resolve_moneyline(selections: list[SelectionRecord], score: Score) -> dict:
    if score.home > score.away:
        winner = Outcome.HOME.value
    elif score.away > score.home:
        winner = Outcome.AWAY.value
    else:
        winner = Outcome.DRAW.value
    if winner == Outcome.DRAW.value and not any(s.outcome == winner for s in selections):
        return {s.id: SelectionStatus.VOID for s in selections}
    return {s.id: SelectionStatus.WON if s.outcome == winner else SelectionStatus.LOST for s in selections}


def resolve_total(market: MarketRecord, selections: list[SelectionRecord], score: Score) -> dict:
    total = score.total
    outcomes = {}
    for sel in selections:
        line = selection_line(market, sel)
        if line is None:
            raise UnknownMarketTypeError(market.market_key, market.type.value)
        if total == line:
            outcomes[sel.id] = SelectionStatus.VOID
        elif sel.outcome == Outcome.OVER.value:
            outcomes[sel.id] = SelectionStatus.WON if total > line else SelectionStatus.LOST
        elif sel.outcome == Outcome.UNDER.value:
            outcomes[sel.id] = SelectionStatus.WON if total < line else SelectionStatus.LOST
        else:
            outcomes[sel.id] = SelectionStatus.LOST
    return outcomes


def resolve_market(market: MarketRecord, selections: list[SelectionRecord], score: Score) -> dict:
    """
    Selection id -> result for one market.

    Raises:
        UnknownMarketTypeError: period markets (":H1", ":Q2", ...), team-scoped
            selections ("team=home&total=1.5") and any type other than
            MONEYLINE/TOTAL.
    """
    if ":" in market.market_key or any(_TEAM_PARAM.search(s.params or "") for s in selections):
        raise UnknownMarketTypeError(market.market_key, market.type.value)
    open_selections = [s for s in selections if not s.status.is_settled]
    if is_moneyline(market):
        return resolve_moneyline(open_selections, score)
    if is_total(market):
        return resolve_total(market, open_selections, score)
    raise UnknownMarketTypeError(market.market_key, market.type.value)


# ── Engine ──────────────────────────────────────────────────────────────
@dataclass
class SettlementReport:
    event_id: str
    source: str
    score: Score
    score_origin: str
    markets_settled: int = 0
    markets_already_settled: int = 0
    markets_unresolved: int = 0
    markets_failed: int = 0
    selections: dict[str, int] = field(default_factory=lambda: {"WON": 0, "LOST": 0, "VOID": 0})
    job_enqueued: bool = False


class SettlementEngine:
    def __init__(
        self,
        store: Store,
        jobs: JobQueuePublisher,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._jobs = jobs
        self._rng = rng or random.Random()

    async def settle_event(
        self,
        event: EventRecord,
        scores: Optional[Score] = None,
        source: SettlementSource = SettlementSource.LIVE_SYNC,
        job_key: Optional[str] = None,
    ) -> SettlementReport:
        """
        Settle every open market of an ended event and enqueue its job.

        The job goes out only when this run settled at least one market, or
        when the event carries no markets at all.

        Raises:
            SettlementError: the synthesized/supplied score could not be
                stored; nothing was settled.
        """
        score, origin = resolve_score(event, scores, self._rng)
        if origin != "stored":
            try:
                updated = await self._store.update_event(event.id, {"scores": score})
            except StoreError as exc:
                raise SettlementError(f"could not store final score for {event.id}: {exc}") from exc
            if updated is not None:
                event = updated

        report = SettlementReport(event_id=str(event.id), source=source.value, score=score, score_origin=origin)
        markets = await self._store.list_markets(
            event.id, statuses=[MarketStatus.OPEN, MarketStatus.SUSPENDED]
        )
        for market in markets:
            await self._settle_market(event, market, score, report)

        # Re-runs over markets that stay open must not produce another payout job.
        if report.markets_settled or not markets:
            report.job_enqueued = await self._enqueue(event, report, job_key or primary_job_key(event.id))
        EVENTS_SETTLED.labels(source=source.value).inc()
        logger.info(
            "event_settled",
            event_id=str(event.id),
            source=source.value,
            score=score.as_string(),
            score_origin=origin,
            markets_settled=report.markets_settled,
            markets_unresolved=report.markets_unresolved,
            markets_failed=report.markets_failed,
            job_enqueued=report.job_enqueued,
        )
        return report

    async def _settle_market(
        self, event: EventRecord, market: MarketRecord, score: Score, report: SettlementReport
    ) -> None:
        try:
            selections = await self._store.list_selections(market.id)
            outcomes = resolve_market(market, selections, score)
            settled = await self._store.settle_market(market.id, outcomes)
        except UnknownMarketTypeError as exc:
            report.markets_unresolved += 1
            MARKETS_UNRESOLVED.labels(market_type=market.type.value).inc()
            logger.info("market_left_open", event_id=str(event.id), market_key=market.market_key, reason=str(exc))
            return
        except StoreError as exc:
            report.markets_failed += 1
            logger.error("market_settle_failed", event_id=str(event.id), market_key=market.market_key, error=str(exc))
            return

        if not settled:
            report.markets_already_settled += 1
            return
        report.markets_settled += 1
        MARKETS_SETTLED.labels(market_type=market.type.value).inc()
        for status in outcomes.values():
            report.selections[status.value] += 1

    async def _enqueue(self, event: EventRecord, report: SettlementReport, key: str) -> bool:
        payload = {
            "eventId": str(event.id),
            "externalId": event.external_id,
            "scores": report.score.model_dump(),
            "source": report.source,
            "marketsSettled": report.markets_settled,
        }
        try:
            return await self._jobs.enqueue(SETTLEMENT_JOB, payload, key)
        except SettlementError as exc:
            logger.error("settlement_job_enqueue_failed", event_id=str(event.id), key=key, error=str(exc))
            return False

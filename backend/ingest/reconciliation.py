"""
Reconciliation of normalized provider events into canonical events.

Precedence for finding the canonical event of an incoming record:
  1. exact external_id ("<provider>:<providerEventId>");
  2. fuzzy claim: an event starting within the match window whose team
     names match, preferring exact normalized names over token
     prefix/substring matches, and which no event id of this provider owns;
  3. create under a found-or-created Sport and Competition.

A fuzzy claim links the incoming external_id to the canonical event
(metadata["linked_external_ids"]); the first provider keeps ownership of
names, start time and competition. Every path feeds the reported status
through the state machine so the stored status never regresses.
"""
from __future__ import annotations

import re
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, Iterable, Optional

from shared.errors import DuplicateExternalIdError, StoreError
from shared.models.domain import (
    CompetitionRecord,
    CompetitionUpsert,
    EventCreate,
    EventRecord,
    NormalizedEvent,
    SportRecord,
    SportUpsert,
)
from shared.models.enums import MarketStatus, MarketType, Outcome, SelectionStatus
from shared.models.sports import get_sport
from shared.store.base import Store
from shared.utils.clock import SYSTEM_CLOCK, Clock
from shared.utils.logging import get_logger
from shared.utils.metrics import EVENTS_RECONCILED

from ingest.state_machine import Transition, resolve_transition

logger = get_logger(__name__)

LINKED_IDS_KEY = "linked_external_ids"
PRE_MATCH_ODDS_KEY = "pre_match_odds"

# Tokens that carry no identity ("FC Barcelona" vs "Barcelona").
_NOISE_TOKENS = frozenset({
    "fc", "cf", "sc", "ac", "as", "ss", "us", "afc", "rcd", "club", "de", "the", "cd", "sv", "fk", "bk",
})
# Placeholder names never identify a fixture.
_UNKNOWN_NAMES = frozenset({"tbd", "tba", "home", "away"})
_NON_WORD = re.compile(r"[^a-z0-9 ]+")


# ── Pure team-name matching ─────────────────────────────────────────────
class NameMatch(IntEnum):
    NONE = 0
    PARTIAL = 1
    EXACT = 2


def normalize_team_name(name: str) -> str:
    """Lowercase, accent-free, punctuation-free, noise tokens removed."""
    text = unicodedata.normalize("NFKD", name or "")
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    text = _NON_WORD.sub(" ", text)
    return " ".join(tok for tok in text.split() if tok not in _NOISE_TOKENS)


def compare_team_names(a: str, b: str) -> NameMatch:
    na, nb = normalize_team_name(a), normalize_team_name(b)
    if not na or not nb or na in _UNKNOWN_NAMES or nb in _UNKNOWN_NAMES:
        return NameMatch.NONE
    if na == nb:
        return NameMatch.EXACT
    shorter, longer = sorted((na, nb), key=len)
    if len(shorter) >= 3 and shorter in longer:
        return NameMatch.PARTIAL
    tokens_a = {t for t in na.split() if len(t) >= 3}
    tokens_b = {t for t in nb.split() if len(t) >= 3}
    if tokens_a & tokens_b:
        return NameMatch.PARTIAL
    for ta in tokens_a:
        for tb in tokens_b:
            if len(ta) >= 4 and len(tb) >= 4 and (ta.startswith(tb[:4]) or tb.startswith(ta[:4])):
                return NameMatch.PARTIAL
    return NameMatch.NONE


def linked_external_ids(event: EventRecord) -> list[str]:
    return [event.external_id, *event.metadata.get(LINKED_IDS_KEY, [])]


def owned_by_other_id(event: EventRecord, external_id: str) -> bool:
    """True when the event already carries a different id of the same provider."""
    prefix = external_id.split(":", 1)[0] + ":"
    return any(ext.startswith(prefix) and ext != external_id for ext in linked_external_ids(event))


def find_fuzzy_match(
    external_id: str,
    home_team: str,
    away_team: str,
    start_time: datetime,
    candidates: Iterable[EventRecord],
    window: timedelta = timedelta(hours=2),
) -> Optional[EventRecord]:
    """
    Pick the canonical event an incoming record should attach to.

    An event already linked to `external_id` is returned as is. Candidates
    carrying another id of the same provider are ignored. Exact normalized
    names on both sides win over partial matches; ties go to the candidate
    whose start time is closest.
    """
    candidates = list(candidates)
    for candidate in candidates:
        if external_id in linked_external_ids(candidate):
            return candidate
    best: Optional[tuple[int, timedelta, EventRecord]] = None
    for candidate in candidates:
        delta = abs(candidate.start_time - start_time)
        if delta > window or owned_by_other_id(candidate, external_id):
            continue
        home = compare_team_names(home_team, candidate.home_team)
        away = compare_team_names(away_team, candidate.away_team)
        strength = min(home, away)
        if strength == NameMatch.NONE:
            continue
        # Higher strength first, then the closest kick-off.
        rank = (-int(strength), delta)
        if best is None or rank < (best[0], best[1]):
            best = (rank[0], rank[1], candidate)
    return best[2] if best else None


# ── Reconciler ──────────────────────────────────────────────────────────
@dataclass
class ReconcileOutcome:
    event: EventRecord
    transition: Transition
    action: str
    previous: Optional[EventRecord] = None
    changes: dict[str, Any] = field(default_factory=dict)

    @property
    def is_owner(self) -> bool:
        return self.action in ("created", "updated")


class Reconciler:
    """Upserts normalized events; safe to run from several provider engines at once."""

    def __init__(
        self,
        store: Store,
        clock: Optional[Clock] = None,
        fuzzy_window_s: float = 7200.0,
    ) -> None:
        self._store = store
        self._clock = clock or SYSTEM_CLOCK
        self._window = timedelta(seconds=fuzzy_window_s)
        self._sports: dict[str, SportRecord] = {}
        self._competitions: dict[tuple[str, str], CompetitionRecord] = {}

    async def ensure_sport(self, slug: str) -> SportRecord:
        cached = self._sports.get(slug)
        if cached is not None:
            return cached
        info = get_sport(slug)
        record = await self._store.upsert_sport(
            SportUpsert(slug=info.slug, name=info.name, icon=info.icon, sort_order=info.sort_order)
        )
        self._sports[slug] = record
        return record

    async def ensure_competition(self, normalized: NormalizedEvent) -> CompetitionRecord:
        key = (normalized.sport_slug, normalized.competition.external_id)
        cached = self._competitions.get(key)
        if cached is not None:
            return cached
        sport = await self.ensure_sport(normalized.sport_slug)
        comp = normalized.competition
        record = await self._store.upsert_competition(
            CompetitionUpsert(
                sport_id=sport.id,
                slug=comp.slug,
                name=comp.name,
                country=comp.country,
                logo=comp.logo,
                external_id=comp.external_id,
            )
        )
        self._competitions[key] = record
        return record

    async def reconcile(self, normalized: NormalizedEvent) -> ReconcileOutcome:
        now = self._clock.now()
        provider = normalized.provider.value

        existing = await self._store.find_by_external_id(normalized.external_id)
        action = "updated"
        if existing is None:
            existing = await self._claim(normalized)
            action = "claimed"
        if existing is None:
            created = await self._create(normalized, now)
            if created is not None:
                EVENTS_RECONCILED.labels(provider=provider, action="created").inc()
                return created
            # Lost a create race against another engine; fall back to the winner.
            existing = await self._store.find_by_external_id(normalized.external_id)
            action = "updated"
            if existing is None:
                raise StoreError(f"event {normalized.external_id} conflicted but cannot be found")

        transition = resolve_transition(existing.status, normalized.status, normalized.start_time, now)
        if action == "updated":
            changes = self._owner_changes(existing, normalized, transition)
        else:
            changes = self._claim_changes(existing, normalized, transition)

        if transition.became_live:
            snapshot = await self.pre_match_snapshot(existing.id)
            if snapshot and PRE_MATCH_ODDS_KEY not in existing.metadata:
                metadata = dict(changes.get("metadata", existing.metadata))
                metadata[PRE_MATCH_ODDS_KEY] = snapshot
                changes["metadata"] = metadata

        # Always written: updated_at doubles as the "touched by a poller" mark.
        updated = await self._store.update_event(existing.id, changes)
        if updated is None:
            raise StoreError(f"event {existing.id} disappeared during update")
        if updated.status != transition.status:
            # Another writer moved the status on after our read.
            logger.info(
                "event_status_superseded",
                provider=provider,
                event_id=str(existing.id),
                reported=transition.status.value,
                stored=updated.status.value,
            )
            transition = Transition(previous=updated.status, status=updated.status)
        EVENTS_RECONCILED.labels(provider=provider, action=action).inc()
        if action == "claimed" and normalized.external_id not in linked_external_ids(existing):
            logger.info(
                "event_fuzzy_claimed",
                provider=provider,
                external_id=normalized.external_id,
                event_id=str(existing.id),
                owner=existing.external_id,
            )
        return ReconcileOutcome(
            event=updated, transition=transition, action=action, previous=existing, changes=changes
        )

    async def remove_placeholder(self, external_id: str) -> bool:
        """Delete a stored event whose provider record no longer names either team."""
        existing = await self._store.find_by_external_id(external_id)
        if existing is None:
            return False
        deleted = await self._store.delete_event(existing.id)
        if deleted:
            logger.info("placeholder_event_deleted", external_id=external_id, event_id=str(existing.id))
        return deleted

    async def pre_match_snapshot(self, event_id: uuid.UUID) -> Optional[dict[str, float]]:
        """Current full-time moneyline prices as {home, away, draw}."""
        markets = await self._store.list_markets(
            event_id, statuses=[MarketStatus.OPEN, MarketStatus.SUSPENDED], market_type=MarketType.MONEYLINE
        )
        markets = [m for m in markets if ":" not in m.market_key]
        if not markets:
            return None
        selections = await self._store.list_selections(markets[0].id)
        snapshot: dict[str, float] = {}
        for sel in selections:
            if sel.status != SelectionStatus.ACTIVE:
                continue
            if sel.outcome == Outcome.HOME.value:
                snapshot["home"] = sel.odds
            elif sel.outcome == Outcome.AWAY.value:
                snapshot["away"] = sel.odds
            elif sel.outcome == Outcome.DRAW.value:
                snapshot["draw"] = sel.odds
        return snapshot or None

    # ── Internals ───────────────────────────────────────────────────────
    async def _claim(self, normalized: NormalizedEvent) -> Optional[EventRecord]:
        candidates = await self._store.find_fuzzy(
            normalized.home_team, normalized.away_team, normalized.start_time, self._window
        )
        return find_fuzzy_match(
            normalized.external_id,
            normalized.home_team,
            normalized.away_team,
            normalized.start_time,
            candidates,
            self._window,
        )

    async def _create(self, normalized: NormalizedEvent, now: datetime) -> Optional[ReconcileOutcome]:
        competition = await self.ensure_competition(normalized)
        transition = resolve_transition(None, normalized.status, normalized.start_time, now)
        try:
            record = await self._store.create_event(
                EventCreate(
                    competition_id=competition.id,
                    external_id=normalized.external_id,
                    name=normalized.name,
                    home_team=normalized.home_team,
                    away_team=normalized.away_team,
                    home_team_logo=normalized.home_team_logo,
                    away_team_logo=normalized.away_team_logo,
                    status=transition.status,
                    is_live=transition.is_live,
                    start_time=normalized.start_time,
                    scores=normalized.scores,
                    metadata=dict(normalized.metadata),
                )
            )
        except DuplicateExternalIdError:
            logger.info("event_create_conflict", external_id=normalized.external_id)
            return None
        return ReconcileOutcome(event=record, transition=transition, action="created")

    def _owner_changes(
        self, existing: EventRecord, normalized: NormalizedEvent, transition: Transition
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {
            "name": normalized.name,
            "home_team": normalized.home_team,
            "away_team": normalized.away_team,
            "start_time": normalized.start_time,
            "status": transition.status,
            "is_live": transition.is_live,
            "metadata": {**existing.metadata, **normalized.metadata},
        }
        if normalized.home_team_logo:
            changes["home_team_logo"] = normalized.home_team_logo
        if normalized.away_team_logo:
            changes["away_team_logo"] = normalized.away_team_logo
        if normalized.scores is not None:
            changes["scores"] = normalized.scores
        return {k: v for k, v in changes.items() if getattr(existing, k) != v}

    def _claim_changes(
        self, existing: EventRecord, normalized: NormalizedEvent, transition: Transition
    ) -> dict[str, Any]:
        linked = list(existing.metadata.get(LINKED_IDS_KEY, []))
        changes: dict[str, Any] = {
            "status": transition.status,
            "is_live": transition.is_live,
        }
        if normalized.external_id not in linked:
            changes["metadata"] = {**existing.metadata, LINKED_IDS_KEY: [*linked, normalized.external_id]}
        if normalized.scores is not None:
            changes["scores"] = normalized.scores
        return {k: v for k, v in changes.items() if getattr(existing, k) != v}

"""
PostgreSQL Store implementation on SQLAlchemy 2.0 async sessions.

Conflict-prone writes use INSERT ... ON CONFLICT so concurrent provider
engines racing on the same entity resolve to a single row.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import DuplicateExternalIdError, StoreError
from shared.models.domain import (
    CompetitionRecord,
    CompetitionUpsert,
    EventCreate,
    EventRecord,
    MarketRecord,
    MarketUpsert,
    SelectionRecord,
    SelectionUpsert,
    SportRecord,
    SportUpsert,
    StalenessCriteria,
)
from shared.models.enums import EventStatus, MarketStatus, MarketType, SelectionStatus
from shared.models.orm import CompetitionORM, EventORM, MarketORM, SelectionORM, SportORM
from shared.store.base import EVENT_MUTABLE_FIELDS, Store, drop_stale_status
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger

logger = get_logger(__name__)

SETTLED_SELECTION_STATUSES = [s.value for s in SelectionStatus if s.is_settled]


def _event_record(row: EventORM, sport_slug: str) -> EventRecord:
    return EventRecord(
        id=row.id,
        competition_id=row.competition_id,
        external_id=row.external_id,
        name=row.name,
        home_team=row.home_team,
        away_team=row.away_team,
        home_team_logo=row.home_team_logo,
        away_team_logo=row.away_team_logo,
        status=EventStatus(row.status),
        is_live=row.is_live,
        start_time=row.start_time,
        scores=row.scores,
        metadata=row.metadata_ or {},
        sport_slug=sport_slug,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _event_columns(values: dict[str, Any]) -> dict[str, Any]:
    """Translate domain field names/values onto ORM columns."""
    out: dict[str, Any] = {}
    for key, value in values.items():
        if key == "metadata":
            out["metadata_"] = value
        elif key == "scores":
            out["scores"] = value.model_dump() if hasattr(value, "model_dump") else value
        elif key == "status":
            out["status"] = EventStatus(value).value
        else:
            out[key] = value
    return out


class SqlStore(Store):
    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    def _event_query(self):
        return (
            select(EventORM, SportORM.slug)
            .join(CompetitionORM, EventORM.competition_id == CompetitionORM.id)
            .join(SportORM, CompetitionORM.sport_id == SportORM.id)
        )

    async def _fetch_events(self, session: AsyncSession, stmt) -> list[EventRecord]:
        result = await session.execute(stmt)
        return [_event_record(row, slug) for row, slug in result.all()]

    # ── Sports & competitions ───────────────────────────────────────────
    async def upsert_sport(self, sport: SportUpsert) -> SportRecord:
        try:
            async with self._db.write_session() as session:
                stmt = (
                    pg_insert(SportORM)
                    .values(**sport.model_dump())
                    .on_conflict_do_update(
                        index_elements=[SportORM.slug],
                        set_={
                            "name": sport.name,
                            "icon": sport.icon,
                            "sort_order": sport.sort_order,
                            "updated_at": func.now(),
                        },
                    )
                    .returning(SportORM)
                )
                row = (await session.execute(stmt)).scalar_one()
                return SportRecord.model_validate(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"upsert_sport({sport.slug}) failed: {exc}") from exc

    async def upsert_competition(self, competition: CompetitionUpsert) -> CompetitionRecord:
        try:
            async with self._db.write_session() as session:
                row: Optional[CompetitionORM] = None
                if competition.external_id:
                    row = (await session.execute(
                        select(CompetitionORM).where(CompetitionORM.external_id == competition.external_id)
                    )).scalars().first()
                if row is None:
                    await session.execute(
                        pg_insert(CompetitionORM)
                        .values(id=uuid.uuid4(), **competition.model_dump())
                        .on_conflict_do_nothing(constraint="uq_competition_sport_slug")
                    )
                    row = (await session.execute(
                        select(CompetitionORM).where(
                            and_(
                                CompetitionORM.sport_id == competition.sport_id,
                                CompetitionORM.slug == competition.slug,
                            )
                        )
                    )).scalar_one()
                row.name = competition.name
                row.country = competition.country
                row.logo = competition.logo
                if competition.external_id:
                    row.external_id = competition.external_id
                row.updated_at = func.now()
                await session.flush()
                await session.refresh(row)
                return CompetitionRecord.model_validate(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"upsert_competition({competition.slug}) failed: {exc}") from exc

    async def count_events_by_sport(self, statuses: list[EventStatus]) -> dict[str, int]:
        try:
            async with self._db.read_session() as session:
                stmt = (
                    select(SportORM.slug, func.count(EventORM.id))
                    .join(CompetitionORM, CompetitionORM.sport_id == SportORM.id)
                    .join(EventORM, EventORM.competition_id == CompetitionORM.id)
                    .where(EventORM.status.in_([s.value for s in statuses]))
                    .group_by(SportORM.slug)
                )
                return {slug: count for slug, count in (await session.execute(stmt)).all()}
        except SQLAlchemyError as exc:
            raise StoreError(f"count_events_by_sport failed: {exc}") from exc

    async def update_sport_event_counts(self, counts: dict[str, int]) -> None:
        try:
            async with self._db.write_session() as session:
                sports = (await session.execute(select(SportORM))).scalars().all()
                for sport in sports:
                    sport.event_count = counts.get(sport.slug, 0)
        except SQLAlchemyError as exc:
            raise StoreError(f"update_sport_event_counts failed: {exc}") from exc

    # ── Events ──────────────────────────────────────────────────────────
    async def get_event(self, event_id: uuid.UUID) -> Optional[EventRecord]:
        try:
            async with self._db.read_session() as session:
                rows = await self._fetch_events(session, self._event_query().where(EventORM.id == event_id))
                return rows[0] if rows else None
        except SQLAlchemyError as exc:
            raise StoreError(f"get_event({event_id}) failed: {exc}") from exc

    async def find_by_external_id(self, external_id: str) -> Optional[EventRecord]:
        try:
            async with self._db.read_session() as session:
                rows = await self._fetch_events(
                    session, self._event_query().where(EventORM.external_id == external_id)
                )
                return rows[0] if rows else None
        except SQLAlchemyError as exc:
            raise StoreError(f"find_by_external_id({external_id}) failed: {exc}") from exc

    async def find_fuzzy(
        self, home_team: str, away_team: str, start_time: datetime, window: timedelta
    ) -> list[EventRecord]:
        try:
            async with self._db.read_session() as session:
                stmt = self._event_query().where(
                    EventORM.start_time.between(start_time - window, start_time + window)
                ).order_by(func.abs(func.extract("epoch", EventORM.start_time - start_time)))
                return await self._fetch_events(session, stmt)
        except SQLAlchemyError as exc:
            raise StoreError(f"find_fuzzy({home_team} vs {away_team}) failed: {exc}") from exc

    async def create_event(self, event: EventCreate) -> EventRecord:
        event_id = uuid.uuid4()
        try:
            async with self._db.write_session() as session:
                stmt = (
                    pg_insert(EventORM)
                    .values(id=event_id, **_event_columns(event.model_dump()))
                    .on_conflict_do_nothing(index_elements=[EventORM.external_id])
                    .returning(EventORM.id)
                )
                inserted = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreError(f"create_event({event.external_id}) failed: {exc}") from exc
        if inserted is None:
            raise DuplicateExternalIdError(event.external_id)
        created = await self.get_event(event_id)
        if created is None:
            raise StoreError(f"event {event_id} vanished after insert")
        return created

    async def update_event(self, event_id: uuid.UUID, changes: dict[str, Any]) -> Optional[EventRecord]:
        unknown = set(changes) - EVENT_MUTABLE_FIELDS
        if unknown:
            raise StoreError(f"cannot update event fields {sorted(unknown)}")
        try:
            async with self._db.write_session() as session:
                # Row lock: a sweep's bulk UPDATE cannot slip between this read and the write.
                current = (await session.execute(
                    select(EventORM.status).where(EventORM.id == event_id).with_for_update()
                )).scalar_one_or_none()
                if current is None:
                    return None
                changes = drop_stale_status(EventStatus(current), changes)
                values = _event_columns(changes)
                values["updated_at"] = func.now()
                if "external_id" in changes:
                    taken = (await session.execute(
                        select(EventORM.id).where(
                            and_(EventORM.external_id == changes["external_id"], EventORM.id != event_id)
                        )
                    )).scalar_one_or_none()
                    if taken is not None:
                        raise DuplicateExternalIdError(changes["external_id"])
                await session.execute(update(EventORM).where(EventORM.id == event_id).values(**values))
        except SQLAlchemyError as exc:
            raise StoreError(f"update_event({event_id}) failed: {exc}") from exc
        return await self.get_event(event_id)

    async def delete_event(self, event_id: uuid.UUID) -> bool:
        try:
            async with self._db.write_session() as session:
                row = await session.get(EventORM, event_id)
                if row is None:
                    return False
                await session.delete(row)
                return True
        except SQLAlchemyError as exc:
            raise StoreError(f"delete_event({event_id}) failed: {exc}") from exc

    async def list_events(
        self,
        statuses: Optional[list[EventStatus]] = None,
        started_before: Optional[datetime] = None,
        with_open_markets: bool = False,
        limit: Optional[int] = None,
    ) -> list[EventRecord]:
        stmt = self._event_query()
        if statuses is not None:
            stmt = stmt.where(EventORM.status.in_([s.value for s in statuses]))
        if started_before is not None:
            stmt = stmt.where(EventORM.start_time < started_before)
        if with_open_markets:
            stmt = stmt.where(
                exists().where(
                    and_(MarketORM.event_id == EventORM.id, MarketORM.status != MarketStatus.SETTLED.value)
                )
            )
        stmt = stmt.order_by(EventORM.start_time.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._db.read_session() as session:
                return await self._fetch_events(session, stmt)
        except SQLAlchemyError as exc:
            raise StoreError(f"list_events failed: {exc}") from exc

    async def bulk_mark_ended_by_staleness(self, criteria: StalenessCriteria) -> list[EventRecord]:
        status_values = [s.value for s in criteria.statuses]
        pick = select(EventORM.id).where(EventORM.status.in_(status_values))
        if criteria.started_before is not None:
            pick = pick.where(EventORM.start_time < criteria.started_before)
        if criteria.updated_before is not None:
            pick = pick.where(EventORM.updated_at < criteria.updated_before)
        pick = pick.order_by(EventORM.start_time.asc())
        if criteria.limit is not None:
            pick = pick.limit(criteria.limit)
        pick = pick.with_for_update(skip_locked=True)
        try:
            async with self._db.write_session() as session:
                ids = list((await session.execute(pick)).scalars().all())
                if not ids:
                    return []
                # Status re-checked in the UPDATE so a concurrent writer cannot be overridden.
                stmt = (
                    update(EventORM)
                    .where(and_(EventORM.id.in_(ids), EventORM.status.in_(status_values)))
                    .values(status=EventStatus.ENDED.value, is_live=False, updated_at=func.now())
                    .returning(EventORM.id)
                )
                moved = list((await session.execute(stmt)).scalars().all())
            if not moved:
                return []
            async with self._db.read_session() as session:
                return await self._fetch_events(
                    session,
                    self._event_query().where(EventORM.id.in_(moved)).order_by(EventORM.start_time.asc()),
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"bulk_mark_ended_by_staleness failed: {exc}") from exc

    async def bulk_mark_live_by_start_time(self, now: datetime) -> int:
        try:
            async with self._db.write_session() as session:
                stmt = (
                    update(EventORM)
                    .where(and_(EventORM.status == EventStatus.UPCOMING.value, EventORM.start_time <= now))
                    .values(status=EventStatus.LIVE.value, is_live=True, updated_at=func.now())
                    .returning(EventORM.id)
                )
                return len((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise StoreError(f"bulk_mark_live_by_start_time failed: {exc}") from exc

    # ── Markets ─────────────────────────────────────────────────────────
    async def upsert_market(self, market: MarketUpsert) -> MarketRecord:
        values = market.model_dump()
        values["type"] = market.type.value
        values["status"] = market.status.value
        try:
            async with self._db.write_session() as session:
                stmt = (
                    pg_insert(MarketORM)
                    .values(id=uuid.uuid4(), **values)
                    .on_conflict_do_update(
                        constraint="uq_market_event_key",
                        set_={
                            "name": values["name"],
                            "type": values["type"],
                            "status": values["status"],
                            "sort_order": values["sort_order"],
                            "updated_at": func.now(),
                        },
                        where=MarketORM.status != MarketStatus.SETTLED.value,
                    )
                )
                await session.execute(stmt)
                row = (await session.execute(
                    select(MarketORM).where(
                        and_(MarketORM.event_id == market.event_id, MarketORM.market_key == market.market_key)
                    )
                )).scalar_one()
                return MarketRecord.model_validate(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"upsert_market({market.market_key}) failed: {exc}") from exc

    async def list_markets(
        self,
        event_id: uuid.UUID,
        statuses: Optional[list[MarketStatus]] = None,
        market_type: Optional[MarketType] = None,
    ) -> list[MarketRecord]:
        stmt = select(MarketORM).where(MarketORM.event_id == event_id)
        if statuses is not None:
            stmt = stmt.where(MarketORM.status.in_([s.value for s in statuses]))
        if market_type is not None:
            stmt = stmt.where(MarketORM.type == market_type.value)
        stmt = stmt.order_by(MarketORM.sort_order, MarketORM.market_key)
        try:
            async with self._db.read_session() as session:
                return [MarketRecord.model_validate(r) for r in (await session.execute(stmt)).scalars().all()]
        except SQLAlchemyError as exc:
            raise StoreError(f"list_markets({event_id}) failed: {exc}") from exc

    async def count_markets(self, event_id: uuid.UUID) -> int:
        try:
            async with self._db.read_session() as session:
                stmt = select(func.count(MarketORM.id)).where(MarketORM.event_id == event_id)
                return int((await session.execute(stmt)).scalar_one())
        except SQLAlchemyError as exc:
            raise StoreError(f"count_markets({event_id}) failed: {exc}") from exc

    async def settle_market(
        self, market_id: uuid.UUID, outcomes: dict[uuid.UUID, SelectionStatus]
    ) -> bool:
        try:
            async with self._db.write_session() as session:
                market = (await session.execute(
                    select(MarketORM).where(MarketORM.id == market_id).with_for_update()
                )).scalar_one_or_none()
                if market is None:
                    raise StoreError(f"unknown market {market_id}")
                if market.status == MarketStatus.SETTLED.value:
                    return False
                for sel_id, status in outcomes.items():
                    await session.execute(
                        update(SelectionORM)
                        .where(
                            and_(
                                SelectionORM.id == sel_id,
                                SelectionORM.market_id == market_id,
                                SelectionORM.status.not_in(SETTLED_SELECTION_STATUSES),
                            )
                        )
                        .values(status=status.value, updated_at=func.now())
                    )
                market.status = MarketStatus.SETTLED.value
                market.settled_at = func.now()
                market.updated_at = func.now()
                return True
        except SQLAlchemyError as exc:
            raise StoreError(f"settle_market({market_id}) failed: {exc}") from exc

    # ── Selections ──────────────────────────────────────────────────────
    async def find_selection(
        self, market_id: uuid.UUID, outcome: str, params: str = ""
    ) -> Optional[SelectionRecord]:
        stmt = select(SelectionORM).where(
            and_(
                SelectionORM.market_id == market_id,
                SelectionORM.outcome == outcome,
                SelectionORM.params == params,
            )
        )
        try:
            async with self._db.read_session() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
                return SelectionRecord.model_validate(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(f"find_selection({market_id}, {outcome}) failed: {exc}") from exc

    async def list_selections(self, market_id: uuid.UUID) -> list[SelectionRecord]:
        try:
            async with self._db.read_session() as session:
                rows = (await session.execute(
                    select(SelectionORM).where(SelectionORM.market_id == market_id)
                )).scalars().all()
                return [SelectionRecord.model_validate(r) for r in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"list_selections({market_id}) failed: {exc}") from exc

    async def upsert_selection(self, selection: SelectionUpsert) -> SelectionRecord:
        values = selection.model_dump()
        values["status"] = selection.status.value
        try:
            async with self._db.write_session() as session:
                market_status = (await session.execute(
                    select(MarketORM.status).where(MarketORM.id == selection.market_id)
                )).scalar_one_or_none()
                if market_status is None:
                    raise StoreError(f"unknown market {selection.market_id}")
                if market_status != MarketStatus.SETTLED.value:
                    stmt = (
                        pg_insert(SelectionORM)
                        .values(id=uuid.uuid4(), **values)
                        .on_conflict_do_update(
                            constraint="uq_selection_market_outcome_params",
                            set_={
                                "name": values["name"],
                                "odds": values["odds"],
                                "handicap": values["handicap"],
                                "probability": values["probability"],
                                "status": values["status"],
                                "updated_at": func.now(),
                            },
                            where=SelectionORM.status.not_in(SETTLED_SELECTION_STATUSES),
                        )
                    )
                    await session.execute(stmt)
                row = (await session.execute(
                    select(SelectionORM).where(
                        and_(
                            SelectionORM.market_id == selection.market_id,
                            SelectionORM.outcome == selection.outcome,
                            SelectionORM.params == selection.params,
                        )
                    )
                )).scalar_one_or_none()
                if row is None:
                    raise StoreError(f"market {selection.market_id} is settled")
                return SelectionRecord.model_validate(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"upsert_selection({selection.outcome}) failed: {exc}") from exc

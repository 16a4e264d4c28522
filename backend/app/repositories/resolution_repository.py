"""Settlement ledger and scheduled resolution queue persistence."""

from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import (
    MirrorResolution,
    ResolutionStatus,
    ScheduledResolution,
    ScheduledResolutionStatus,
    utcnow,
)

_ACTIVE_STATUSES = (ResolutionStatus.RESOLVING.value, ResolutionStatus.SUBMITTED.value)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class ResolutionClaimConflict(Exception):
    """Raised when a mirror key is already resolved or being resolved."""

    def __init__(self, mirror_key: str, status: str, attempts: int) -> None:
        super().__init__(f"Mirror {mirror_key} is {status}")
        self.mirror_key = mirror_key
        self.status = status
        self.attempts = attempts


class ResolutionRepository:
    """Local ledger of settlement attempts keyed by mirror key."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Ledger

    def get(self, mirror_key: str) -> MirrorResolution | None:
        return self._session.get(MirrorResolution, mirror_key)

    @staticmethod
    def is_claimable(record: MirrorResolution, *, stale_before: datetime | None = None) -> bool:
        """Whether ``record`` may be claimed by a new settlement attempt.

        ``failed`` rows always are. ``resolving`` and ``submitted`` rows are
        only when their last update is at or before ``stale_before``.
        """

        if record.status == ResolutionStatus.FAILED.value:
            return True
        if record.status in _ACTIVE_STATUSES and stale_before is not None:
            return _as_utc(record.updated_at) <= stale_before
        return False

    def claim(
        self,
        mirror_key: str,
        *,
        yes_won: bool,
        stale_before: datetime | None = None,
    ) -> MirrorResolution:
        """Move a key into ``resolving`` and bump its attempt count.

        A stored ``tx_hash`` is kept so the caller can look up the earlier
        transaction before sending another one.
        """

        record = self.get(mirror_key)
        if record is not None:
            if not self.is_claimable(record, stale_before=stale_before):
                raise ResolutionClaimConflict(mirror_key, record.status, record.attempts)
            if record.status in _ACTIVE_STATUSES:
                logger.warning(
                    "Taking over stale {} claim on {} last updated at {}",
                    record.status,
                    mirror_key,
                    record.updated_at,
                )
            record.status = ResolutionStatus.RESOLVING.value
            record.yes_won = yes_won
            record.attempts += 1
            record.last_error = None
            self._session.flush()
            return record

        record = MirrorResolution(
            mirror_key=mirror_key,
            status=ResolutionStatus.RESOLVING.value,
            yes_won=yes_won,
            attempts=1,
        )
        try:
            with self._session.begin_nested():
                self._session.add(record)
        except IntegrityError as exc:
            # Another trigger inserted the same key first.
            raise ResolutionClaimConflict(mirror_key, ResolutionStatus.RESOLVING.value, 1) from exc
        return record

    def mark_submitted(
        self,
        record: MirrorResolution,
        *,
        tx_hash: str,
        oracle_signature: str,
        source: str | None,
    ) -> MirrorResolution:
        record.status = ResolutionStatus.SUBMITTED.value
        record.tx_hash = tx_hash
        record.oracle_signature = oracle_signature
        record.source = source
        self._session.flush()
        return record

    def mark_resolved(
        self,
        record: MirrorResolution,
        *,
        tx_hash: str,
        block_number: int,
        oracle_signature: str,
        source: str | None,
    ) -> MirrorResolution:
        record.status = ResolutionStatus.RESOLVED.value
        record.tx_hash = tx_hash
        record.block_number = block_number
        record.oracle_signature = oracle_signature
        record.source = source
        record.last_error = None
        record.resolved_at = utcnow()
        self._session.flush()
        return record

    def mark_failed(self, record: MirrorResolution, *, error: str, tx_hash: str | None = None) -> MirrorResolution:
        record.status = ResolutionStatus.FAILED.value
        record.last_error = error
        if tx_hash:
            record.tx_hash = tx_hash
        self._session.flush()
        return record

    # ------------------------------------------------------------------
    # Scheduled resolutions

    def schedule(
        self,
        *,
        external_market_id: str,
        oracle_source: str,
        scheduled_time: datetime,
        mirror_key: str | None = None,
    ) -> ScheduledResolution:
        record = ScheduledResolution(
            external_market_id=external_market_id,
            oracle_source=oracle_source,
            scheduled_time=scheduled_time,
            mirror_key=mirror_key,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def get_schedule(self, schedule_id: int) -> ScheduledResolution | None:
        return self._session.get(ScheduledResolution, schedule_id)

    def find_open_schedule(self, external_market_id: str) -> ScheduledResolution | None:
        """Pending or executing queue entry for a market, if any."""

        query = select(ScheduledResolution).where(
            ScheduledResolution.external_market_id == external_market_id,
            ScheduledResolution.status.in_(
                [ScheduledResolutionStatus.PENDING.value, ScheduledResolutionStatus.EXECUTING.value]
            ),
        )
        return self._session.execute(query.limit(1)).scalars().first()

    def list_scheduled(
        self,
        *,
        status: str | None = None,
        external_market_id: str | None = None,
        due_before: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ScheduledResolution], int]:
        filters = []
        if due_before is not None:
            filters.append(ScheduledResolution.scheduled_time <= due_before)
        if status:
            filters.append(ScheduledResolution.status == status)
        if external_market_id:
            filters.append(ScheduledResolution.external_market_id == external_market_id)

        query = (
            select(ScheduledResolution)
            .where(*filters)
            .order_by(ScheduledResolution.scheduled_time.desc(), ScheduledResolution.id.desc())
            .limit(limit)
            .offset(offset)
        )
        total_query = select(func.count(ScheduledResolution.id)).where(*filters)

        items = list(self._session.execute(query).scalars().all())
        total = self._session.execute(total_query).scalar_one()
        return items, total

    def list_due(self, now: datetime, *, limit: int) -> list[ScheduledResolution]:
        query = (
            select(ScheduledResolution)
            .where(
                ScheduledResolution.status == ScheduledResolutionStatus.PENDING.value,
                ScheduledResolution.scheduled_time <= now,
            )
            .order_by(ScheduledResolution.scheduled_time.asc(), ScheduledResolution.id.asc())
            .limit(limit)
        )
        return list(self._session.execute(query).scalars().all())

    def mark_executing(self, record: ScheduledResolution) -> None:
        record.status = ScheduledResolutionStatus.EXECUTING.value
        self._session.flush()

    def defer(self, record: ScheduledResolution, *, reason: str) -> None:
        record.status = ScheduledResolutionStatus.PENDING.value
        record.attempts += 1
        record.last_error = reason
        self._session.flush()

    def mark_completed(
        self,
        record: ScheduledResolution,
        *,
        outcome: bool,
        tx_hash: str | None,
        executed_at: datetime,
    ) -> None:
        record.status = ScheduledResolutionStatus.COMPLETED.value
        record.outcome = outcome
        record.execute_tx_hash = tx_hash
        record.executed_at = executed_at
        record.last_error = None
        self._session.flush()

    def mark_schedule_failed(self, record: ScheduledResolution, *, error: str) -> None:
        record.status = ScheduledResolutionStatus.FAILED.value
        record.attempts += 1
        record.last_error = error
        self._session.flush()


__all__ = ["ResolutionClaimConflict", "ResolutionRepository"]

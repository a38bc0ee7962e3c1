"""Spend ledger: records payments and enforces per-task and per-day ceilings.

Only primary-asset (STX) records count toward totals and ceilings. Payments
in other assets are stored and counted as transactions but never summed.

Budget checks and payments from concurrent runs meet here, so the ledger
offers an atomic check-and-reserve:

1) ``reserve(amount)`` runs the same rules as ``can_spend`` and, if allowed,
   holds ``amount`` against today's ceiling under a single lock.
2) ``record_payment(..., reservation_id=...)`` draws payments down from it.
3) ``release(reservation_id)`` frees whatever was not spent.

``can_spend`` also counts outstanding reservations, so two runs can never both
pass the check and jointly exceed the daily ceiling.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import uuid4

from .formatting import format_stx
from .models import (
    PRIMARY_ASSET,
    AllTimeSpend,
    AssetType,
    Reservation,
    SpendCheck,
    SpendingSummary,
    SpendLimits,
    SpendRecord,
    TodaySpend,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class SpendLedger:
    """Thread-safe in-memory spend ledger."""

    def __init__(
        self,
        max_per_task: int,
        max_per_day: int,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if max_per_task < 0 or max_per_day < 0:
            raise ValueError("Spending limits must be non-negative")
        self.max_per_task = max_per_task
        self.max_per_day = max_per_day
        self._clock = clock
        self._records: list[SpendRecord] = []
        self._reservations: dict[str, int] = {}
        self._lock = threading.RLock()

    def can_spend(self, amount: int) -> SpendCheck:
        with self._lock:
            return self._check(amount)

    def reserve(self, amount: int) -> tuple[SpendCheck, Reservation | None]:
        """Check and hold ``amount`` in one step."""
        with self._lock:
            check = self._check(amount)
            if not check.allowed:
                return check, None
            reservation = Reservation(reservation_id=uuid4().hex, amount=amount)
            self._reservations[reservation.reservation_id] = amount
        logger.debug(
            "ledger event=reserved reservation_id=%s amount=%s",
            reservation.reservation_id,
            amount,
        )
        return check, reservation

    def release(self, reservation_id: str) -> int:
        """Drop a reservation and return the unspent remainder."""
        with self._lock:
            remaining = self._reservations.pop(reservation_id, 0)
        logger.debug(
            "ledger event=released reservation_id=%s remaining=%s", reservation_id, remaining
        )
        return remaining

    def record_payment(
        self,
        amount: int,
        asset: AssetType,
        service_id: str,
        service_name: str,
        tx_id: str | None = None,
        *,
        reservation_id: str | None = None,
    ) -> SpendRecord:
        record = SpendRecord(
            timestamp=self._clock(),
            amount=amount,
            asset=asset,
            service_id=service_id,
            service_name=service_name,
            tx_id=tx_id,
        )
        with self._lock:
            self._records.append(record)
            if reservation_id is not None and asset == PRIMARY_ASSET:
                held = self._reservations.get(reservation_id)
                if held is not None:
                    self._reservations[reservation_id] = max(held - amount, 0)
        logger.debug(
            "ledger event=payment_recorded amount=%s service=%s tx_id=%s",
            format_stx(amount) if asset == PRIMARY_ASSET else f"{amount} {asset}",
            service_name,
            tx_id,
        )
        return record

    def get_today_spent(self) -> int:
        with self._lock:
            return self._today_spent()

    def get_summary(self) -> SpendingSummary:
        with self._lock:
            midnight = self._midnight()
            today_records = [r for r in self._records if r.timestamp >= midnight]
            by_service: dict[str, int] = {}
            for record in today_records:
                if record.asset == PRIMARY_ASSET:
                    by_service[record.service_name] = (
                        by_service.get(record.service_name, 0) + record.amount
                    )
            today_total = self._today_spent()
            all_time_total = sum(r.amount for r in self._records if r.asset == PRIMARY_ASSET)
            return SpendingSummary(
                today=TodaySpend(
                    total=today_total,
                    transactions=len(today_records),
                    by_service=by_service,
                ),
                all_time=AllTimeSpend(total=all_time_total, transactions=len(self._records)),
                limits=SpendLimits(
                    per_task=self.max_per_task,
                    per_day=self.max_per_day,
                    remaining_today=max(self.max_per_day - today_total, 0),
                ),
            )

    def recent_transactions(self, limit: int = 10) -> list[SpendRecord]:
        with self._lock:
            ordered = sorted(self._records, key=lambda r: r.timestamp, reverse=True)
        return ordered[:limit]

    def set_limits(self, max_per_task: int | None = None, max_per_day: int | None = None) -> None:
        with self._lock:
            if max_per_task is not None:
                if max_per_task < 0:
                    raise ValueError("max_per_task must be non-negative")
                self.max_per_task = max_per_task
                logger.info("ledger event=limit_updated per_task=%s", format_stx(max_per_task))
            if max_per_day is not None:
                if max_per_day < 0:
                    raise ValueError("max_per_day must be non-negative")
                self.max_per_day = max_per_day
                logger.info("ledger event=limit_updated per_day=%s", format_stx(max_per_day))

    def reset_daily(self) -> None:
        with self._lock:
            midnight = self._midnight()
            self._records = [r for r in self._records if r.timestamp < midnight]
        logger.info("ledger event=daily_reset")

    def export_records(self) -> list[SpendRecord]:
        with self._lock:
            return list(self._records)

    def import_records(self, records: list[SpendRecord | dict]) -> None:
        parsed = [SpendRecord.model_validate(r) for r in records]
        with self._lock:
            self._records = parsed

    def _check(self, amount: int) -> SpendCheck:
        if amount > self.max_per_task:
            return SpendCheck(
                allowed=False,
                reason=(
                    f"Amount {format_stx(amount)} exceeds per-task limit of "
                    f"{format_stx(self.max_per_task)}"
                ),
            )
        committed = self._today_spent() + sum(self._reservations.values())
        if committed + amount > self.max_per_day:
            return SpendCheck(
                allowed=False,
                reason=(
                    f"Would exceed daily limit. Spent today: {format_stx(committed)}, "
                    f"Limit: {format_stx(self.max_per_day)}"
                ),
            )
        return SpendCheck(allowed=True)

    def _today_spent(self) -> int:
        midnight = self._midnight()
        return sum(
            r.amount
            for r in self._records
            if r.timestamp >= midnight and r.asset == PRIMARY_ASSET
        )

    def _midnight(self) -> datetime:
        return self._clock().replace(hour=0, minute=0, second=0, microsecond=0)

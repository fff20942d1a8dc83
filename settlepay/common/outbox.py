"""Transactional outbox relay.

Rows are written by the lifecycle engine in the same transaction as a terminal
status change; `OutboxRelay` claims them in batches, publishes through Kafka and
acks or requeues each row. The relay only needs a mapped class whose table has
`id`, `topic`, `payload`, `status`, `created_at` and `sent_at` columns.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from settlepay.common.events import EventEnvelope
from settlepay.common.logging import logger
from settlepay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


class OutboxRelay:
    """Claims pending outbox rows and hands them to a bus with `publish(topic, event)`."""

    def __init__(
        self,
        session_factory,
        outbox_model,
        bus,
        service_name: str,
        batch_size: int = 100,
        processing_timeout_seconds: int = 30,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.session_factory = session_factory
        self.table = outbox_model.__table__
        self.bus = bus
        self.service_name = service_name
        self.batch_size = batch_size
        self.processing_timeout_seconds = processing_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def claim_batch(self, db) -> list[dict]:
        """Atomically move a batch of pending (or stale in-flight) rows to PROCESSING."""

        table = self.table
        now = datetime.now(timezone.utc)
        stale_before = now - timedelta(seconds=self.processing_timeout_seconds)
        claimable = (
            select(table.c.id)
            .where(
                or_(
                    table.c.status == "PENDING",
                    (table.c.status == "PROCESSING") & (table.c.sent_at < stale_before),
                )
            )
            .order_by(table.c.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        rows = db.execute(
            update(table)
            .where(table.c.id.in_(claimable.scalar_subquery()))
            .values(status="PROCESSING", sent_at=now)
            .returning(table.c.id, table.c.topic, table.c.payload)
            .execution_options(synchronize_session=False)
        ).all()
        return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]

    def _finish(self, event_id: str, status: str) -> None:
        sent_at = datetime.now(timezone.utc) if status == "SENT" else None
        with self.session_factory() as db:
            db.execute(
                update(self.table)
                .where(self.table.c.id == event_id, self.table.c.status == "PROCESSING")
                .values(status=status, sent_at=sent_at)
            )
            self.update_backlog_metrics(db)
            db.commit()

    def update_backlog_metrics(self, db) -> None:
        """Refresh gauges for pending outbox depth and oldest pending age."""

        table = self.table
        pending = table.c.status.in_(("PENDING", "PROCESSING"))
        pending_count = db.execute(select(func.count()).select_from(table).where(pending)).scalar_one()
        oldest_pending = db.execute(select(func.min(table.c.created_at)).where(pending)).scalar_one()
        age_seconds = 0.0
        if oldest_pending is not None:
            if oldest_pending.tzinfo is None:
                oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
            age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(pending_count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)

    async def publish_pending_once(self) -> int:
        """Publish one claimed batch; returns how many rows were delivered."""

        with self.session_factory() as db:
            rows = self.claim_batch(db)
            self.update_backlog_metrics(db)
            db.commit()
        sent = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
            except Exception as exc:
                logger.exception("outbox_publish_failed event_id=%s error=%s", row["id"], exc)
                self._finish(row["id"], "PENDING")
                continue
            self._finish(row["id"], "SENT")
            sent += 1
        return sent

    async def run_forever(self) -> None:
        """Continuously publish outbox rows until cancelled."""

        while True:
            try:
                await self.publish_pending_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(self.poll_interval_seconds)

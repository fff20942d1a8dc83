"""Payment storage boundary.

The lifecycle engine depends only on the `PaymentStore` protocol. Uniqueness of
the idempotency key is left to the database's unique index, and every status
change is a conditional UPDATE on the expected status (and, when given, the
expected `state_version`), so two writers can never both win the same edge.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Protocol, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from settlepay.common.events import EventEnvelope
from settlepay.common.state_machine import validate_transition
from settlepay.services.gateway.errors import DuplicateKey, NotFound
from settlepay.services.gateway.models import OutboxEvent, Payment, PaymentTimeline


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""

    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PaymentStore(Protocol):
    def insert_unique(self, payment: Payment, reason: str = "payment_created") -> Payment: ...

    def get_by_id(self, payment_id: str) -> Payment: ...

    def get_by_key(self, idempotency_key: str) -> Payment: ...

    def compare_and_swap_status(
        self,
        payment_id: str,
        expected_status: str,
        new_status: str,
        mutations: dict[str, Any],
        *,
        expected_version: int | None = None,
        reason: str,
        events: Iterable[EventEnvelope] = (),
    ) -> Payment | None: ...

    def list_by_status(self, status: str, limit: int | None = None) -> list[Payment]: ...

    def list_stale(self, status: str, updated_before: datetime) -> list[Payment]: ...

    def count_by_status(self, status: str) -> int: ...

    def timeline(self, payment_id: str) -> Sequence[PaymentTimeline]: ...


class SqlPaymentStore:
    """SQLAlchemy-backed `PaymentStore`; one short session per operation."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _detach(self, payment: Payment) -> Payment:
        payment.created_at = as_utc(payment.created_at)
        payment.updated_at = as_utc(payment.updated_at)
        payment.completed_at = as_utc(payment.completed_at)
        return payment

    def insert_unique(self, payment: Payment, reason: str = "payment_created") -> Payment:
        """Insert a new payment; raise `DuplicateKey` if the key is already taken."""

        with self.session_factory() as db:
            try:
                db.add(payment)
                db.flush()
                db.add(
                    PaymentTimeline(
                        payment_id=payment.payment_id,
                        state_version=payment.state_version,
                        from_state=None,
                        to_state=payment.status,
                        reason=reason,
                        created_at=payment.created_at,
                    )
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                # Only a key collision is a duplicate; anything else is a real error.
                exists = db.execute(
                    select(Payment.payment_id).where(Payment.idempotency_key == payment.idempotency_key)
                ).first()
                if exists is None:
                    raise
                raise DuplicateKey(payment.idempotency_key) from None
        return self._detach(payment)

    def get_by_id(self, payment_id: str) -> Payment:
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
            if payment is None:
                raise NotFound(f"payment not found: {payment_id}")
            return self._detach(payment)

    def get_by_key(self, idempotency_key: str) -> Payment:
        with self.session_factory() as db:
            payment = db.execute(
                select(Payment).where(Payment.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            if payment is None:
                raise NotFound(f"payment not found with idempotency key: {idempotency_key}")
            return self._detach(payment)

    def compare_and_swap_status(
        self,
        payment_id: str,
        expected_status: str,
        new_status: str,
        mutations: dict[str, Any],
        *,
        expected_version: int | None = None,
        reason: str,
        events: Iterable[EventEnvelope] = (),
    ) -> Payment | None:
        """Apply one validated transition if the row still matches; return the new row or None.

        The timeline row and any outbox events commit in the same transaction as
        the status change.
        """

        validate_transition(expected_status, new_status)
        now = mutations.get("updated_at") or datetime.now(timezone.utc)
        conditions = [Payment.payment_id == payment_id, Payment.status == expected_status]
        if expected_version is not None:
            conditions.append(Payment.state_version == expected_version)

        with self.session_factory() as db:
            result = db.execute(
                update(Payment)
                .where(*conditions)
                .values(status=new_status, state_version=Payment.state_version + 1, **mutations)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return None

            payment = db.get(Payment, payment_id)
            db.add(
                PaymentTimeline(
                    payment_id=payment_id,
                    state_version=payment.state_version,
                    from_state=expected_status,
                    to_state=new_status,
                    reason=reason,
                    created_at=now,
                )
            )
            for event in events:
                db.add(
                    OutboxEvent(
                        aggregate_type="payment",
                        aggregate_id=event.aggregate_id,
                        event_type=event.event_type,
                        topic=event.event_type,
                        payload=event.model_dump(),
                        status="PENDING",
                        created_at=now,
                    )
                )
            db.commit()
            return self._detach(payment)

    def list_by_status(self, status: str, limit: int | None = None) -> list[Payment]:
        """Payments in `status`, oldest first."""

        stmt = (
            select(Payment)
            .where(Payment.status == status)
            .order_by(Payment.created_at, Payment.payment_id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.session_factory() as db:
            return [self._detach(p) for p in db.execute(stmt).scalars().all()]

    def list_stale(self, status: str, updated_before: datetime) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.status == status, Payment.updated_at < updated_before)
            .order_by(Payment.updated_at)
        )
        with self.session_factory() as db:
            return [self._detach(p) for p in db.execute(stmt).scalars().all()]

    def count_by_status(self, status: str) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count()).select_from(Payment).where(Payment.status == status)
            ).scalar_one()

    def timeline(self, payment_id: str) -> Sequence[PaymentTimeline]:
        """Transition history for one payment, in order."""

        with self.session_factory() as db:
            rows = (
                db.execute(
                    select(PaymentTimeline)
                    .where(PaymentTimeline.payment_id == payment_id)
                    .order_by(PaymentTimeline.state_version)
                )
                .scalars()
                .all()
            )
        for row in rows:
            row.created_at = as_utc(row.created_at)
        return rows

"""Booking state machine: ledger event -> rental state, history and blocked dates."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.errors import PreconditionViolation, RecordNotFound, StaleEvent
from app.models import JobsOutbox
from app.models.enums import PaymentOutcome, PaymentProvider, PaymentStatus, RentalStatus
from app.services.adapters import PaymentEvent
from app.services.booking_state import BookingStateMachine
from app.services.inventory import InventoryBlocker
from app.services.ledger import PaymentLedger
from tests.queries import blocked_dates, history_types

T0 = datetime(2024, 5, 20, 8, 0)


async def _attempt(db, rental, external_id="pi_1", is_deposit=True):
    record = await PaymentLedger(db).open_attempt(
        rental_id=rental.id,
        provider=PaymentProvider.PAYMONGO,
        external_id=external_id,
        amount=rental.deposit_amount if is_deposit else rental.total_price,
        currency="PHP",
        is_deposit=is_deposit,
        provider_status="awaiting_payment_method",
        metadata={},
    )
    await db.commit()
    return record


def _event(external_id, outcome, occurred_at=T0, **fields):
    return PaymentEvent(
        provider=PaymentProvider.PAYMONGO,
        external_payment_id=external_id,
        outcome=outcome,
        raw_status="succeeded" if outcome == PaymentOutcome.SUCCEEDED else "awaiting_payment_method",
        event_type="test",
        occurred_at=occurred_at,
        **fields,
    )


async def _apply(db, event):
    result = await BookingStateMachine(db).apply(event)
    await db.commit()
    return result


async def test_deposit_success_confirms_and_blocks(db, rental):
    record = await _attempt(db, rental)

    result = await _apply(db, _event("pi_1", PaymentOutcome.SUCCEEDED))

    assert rental.deposit_paid is True
    assert rental.deposit_payment_id == record.id
    assert rental.status == RentalStatus.CONFIRMED
    assert rental.payment_status == PaymentStatus.PENDING
    assert result.changed is True
    assert result.blocked_count == 3
    assert len(await blocked_dates(db, rental.vehicle_id)) == 3
    assert await history_types(db, rental.id) == ["dates_blocked", "deposit_paid"]


async def test_full_payment_success(db, make_rental):
    rental = await make_rental(deposit_required=False, deposit_amount=Decimal("0"))
    await _attempt(db, rental, is_deposit=False)

    result = await _apply(db, _event("pi_1", PaymentOutcome.SUCCEEDED))

    assert rental.payment_status == PaymentStatus.PAID
    assert rental.payment_date is not None
    assert rental.status == RentalStatus.CONFIRMED
    assert rental.deposit_paid is False
    assert result.as_response()["payment_status"] == "paid"
    assert await history_types(db, rental.id) == ["dates_blocked", "payment_succeeded"]


async def test_full_payment_after_deposit_keeps_dates_blocked_once(db, rental):
    await _attempt(db, rental, "pi_deposit", is_deposit=True)
    await _attempt(db, rental, "pi_full", is_deposit=False)

    await _apply(db, _event("pi_deposit", PaymentOutcome.SUCCEEDED))
    result = await _apply(db, _event("pi_full", PaymentOutcome.SUCCEEDED))

    assert rental.payment_status == PaymentStatus.PAID
    assert rental.deposit_paid is True
    assert result.blocked_count == 0
    assert await history_types(db, rental.id) == ["dates_blocked", "deposit_paid", "payment_succeeded"]


@pytest.mark.parametrize(
    "terminal",
    [
        RentalStatus.COMPLETED,
        RentalStatus.CANCELLED,
        RentalStatus.REJECTED,
        RentalStatus.NO_SHOW,
        RentalStatus.AUTO_CANCELLED,
    ],
)
async def test_late_success_keeps_terminal_status(db, make_rental, terminal):
    rental = await make_rental(status=terminal)
    record = await _attempt(db, rental)

    result = await _apply(db, _event("pi_1", PaymentOutcome.SUCCEEDED))

    assert rental.status == terminal
    assert rental.deposit_paid is True
    assert record.outcome == PaymentOutcome.SUCCEEDED
    assert result.blocked_count == 0
    assert await blocked_dates(db, rental.vehicle_id) == []
    assert await history_types(db, rental.id) == ["late_payment"]


async def test_deposit_success_without_required_deposit_leaves_rental(db, make_rental):
    rental = await make_rental(deposit_required=False, deposit_amount=Decimal("0"))
    await _attempt(db, rental, is_deposit=True)

    result = await _apply(db, _event("pi_1", PaymentOutcome.SUCCEEDED))

    assert result.outcome == PaymentOutcome.SUCCEEDED
    assert rental.deposit_paid is False
    assert rental.status == RentalStatus.PENDING


async def test_deposit_failure(db, rental):
    record = await _attempt(db, rental)

    result = await _apply(db, _event("pi_1", PaymentOutcome.FAILED, error_message="Card declined"))

    assert result.changed is True
    assert rental.deposit_paid is False
    assert rental.status == RentalStatus.PENDING
    assert record.last_error == "Card declined"
    assert await history_types(db, rental.id) == ["deposit_failed"]


async def test_full_payment_failure(db, rental):
    await _attempt(db, rental, is_deposit=False)

    await _apply(db, _event("pi_1", PaymentOutcome.FAILED))

    assert rental.payment_status == PaymentStatus.FAILED
    assert await history_types(db, rental.id) == ["payment_failed"]


async def test_failure_after_success_is_stale(db, rental):
    await _attempt(db, rental)
    await _apply(db, _event("pi_1", PaymentOutcome.SUCCEEDED))

    with pytest.raises(StaleEvent):
        await BookingStateMachine(db).apply(_event("pi_1", PaymentOutcome.FAILED, occurred_at=T0 + timedelta(hours=1)))

    assert rental.deposit_paid is True
    assert rental.status == RentalStatus.CONFIRMED


async def test_older_event_is_stale(db, rental):
    await _attempt(db, rental)
    await _apply(db, _event("pi_1", PaymentOutcome.PENDING, occurred_at=T0))

    with pytest.raises(StaleEvent):
        await BookingStateMachine(db).apply(_event("pi_1", PaymentOutcome.FAILED, occurred_at=T0 - timedelta(minutes=5)))


async def test_failure_of_superseded_attempt_after_payment_is_ledger_only(db, rental):
    first = await _attempt(db, rental, "pi_first")
    await _attempt(db, rental, "pi_second")
    await _apply(db, _event("pi_second", PaymentOutcome.SUCCEEDED))

    result = await _apply(db, _event("pi_first", PaymentOutcome.FAILED))

    assert result.changed is False
    assert first.outcome == PaymentOutcome.FAILED
    assert rental.deposit_paid is True
    assert rental.status == RentalStatus.CONFIRMED
    assert "deposit_failed" not in await history_types(db, rental.id)


async def test_late_success_on_superseded_attempt_is_honoured(db, rental):
    first = await _attempt(db, rental, "pi_first")
    await _attempt(db, rental, "pi_second")

    await _apply(db, _event("pi_first", PaymentOutcome.SUCCEEDED))

    assert first.outcome == PaymentOutcome.SUCCEEDED
    assert rental.deposit_paid is True
    assert rental.deposit_payment_id == first.id


async def test_repeated_failure_writes_history_once(db, rental):
    await _attempt(db, rental)

    await _apply(db, _event("pi_1", PaymentOutcome.FAILED, occurred_at=T0))
    await _apply(db, _event("pi_1", PaymentOutcome.FAILED, occurred_at=T0 + timedelta(minutes=1)))

    assert await history_types(db, rental.id) == ["deposit_failed"]


async def test_unknown_artifact(db, rental):
    with pytest.raises(RecordNotFound):
        await BookingStateMachine(db).apply(_event("pi_unknown", PaymentOutcome.SUCCEEDED))


async def test_ledger_wins_over_event_claims(db, rental, caplog):
    await _attempt(db, rental, is_deposit=True)

    await _apply(db, _event("pi_1", PaymentOutcome.SUCCEEDED, is_deposit=False))

    assert rental.deposit_paid is True
    assert rental.payment_status == PaymentStatus.PENDING
    assert "using ledger" in caplog.text


async def test_unblockable_dates_keep_the_payment_and_alert(db, rental, monkeypatch):
    async def bad_range(self, vehicle_id, start_date, end_date, rental_id):
        raise PreconditionViolation(f"Start date {end_date} is after end date {start_date}")

    monkeypatch.setattr(InventoryBlocker, "block", bad_range)
    await _attempt(db, rental)

    result = await _apply(db, _event("pi_1", PaymentOutcome.SUCCEEDED))

    assert result.blocked_count == 0
    assert rental.deposit_paid is True
    assert rental.status == RentalStatus.CONFIRMED
    assert await history_types(db, rental.id) == ["deposit_paid"]
    jobs = (await db.execute(select(JobsOutbox))).scalars().all()
    assert [(job.type, job.unique_scope) for job in jobs] == [
        ("operator_alert", f"alert:blocking_failed:{rental.id}"),
    ]

"""
Payment Reconciler

Every path that can learn a payment's outcome ends in ``apply_event``:
- Provider webhooks (PayMongo intents, GCash sources, PayPal)
- Client-driven polls (attach payment method, check status)
- PayPal capture responses
- The jobs outbox, replaying events whose persistence failed

``apply_event`` admits the event once, runs the booking state machine and
commits both in one transaction. Provider calls always happen outside that
transaction. Admin lifecycle changes (complete, cancel, no-show, the
auto-cancel sweep) go through the same booking state machine.
"""

import asyncio
import hmac
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID, uuid4

from fastapi import Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.core.errors import (
    AdapterError,
    DuplicateEvent,
    PartialFailure,
    PreconditionViolation,
    ProviderRejected,
    RecordNotFound,
    ReconciliationError,
    StaleEvent,
)
from app.core.security import AuthenticatedUser
from app.models.booking_history import BookingHistoryEntry
from app.models.enums import (
    HistoryEventType,
    JobType,
    PaymentOutcome,
    PaymentProvider,
    PaymentStatus,
    RentalStatus,
)
from app.models.payment import PaymentRecord
from app.models.payout import Payout
from app.models.rental import Rental
from app.services.adapters import GCashSourceAdapter, PayMongoAdapter, PayPalAdapter, PaymentEvent
from app.services.booking_state import BookingStateMachine
from app.services.idempotency import IdempotencyGuard
from app.services.jobs import JobHandler, JobsService
from app.services.ledger import PaymentLedger, flatten_metadata
from app.services.paymongo import PayMongoClient, from_centavos
from app.services.paypal import PayPalClient
from app.services.payouts import DepositPayoutManager
from app.services.signatures import SignatureVerifier

logger = logging.getLogger(__name__)

# PayPal capture refusals that mean the buyer's payment failed, not a bad request
PAYPAL_DECLINE_ISSUES = frozenset({
    "INSTRUMENT_DECLINED",
    "TRANSACTION_REFUSED",
    "PAYER_CANNOT_PAY",
})


@dataclass
class ProviderClients:
    paymongo: PayMongoClient
    paypal: PayPalClient


@lru_cache
def get_provider_clients() -> ProviderClients:
    """Process-wide provider clients (PayPal caches its OAuth token)."""
    settings = get_settings()
    return ProviderClients(
        paymongo=PayMongoClient(settings),
        paypal=PayPalClient(settings),
    )


class PaymentReconciler:
    """Entry point for webhooks, user payment operations and outbox jobs."""

    def __init__(self, db: AsyncSession, settings: Settings, clients: ProviderClients):
        self.db = db
        self.settings = settings
        self.paymongo = clients.paymongo
        self.paypal = clients.paypal
        self.ledger = PaymentLedger(db)
        self.guard = IdempotencyGuard(db)
        self.jobs = JobsService(db)
        self.verifier = SignatureVerifier(settings, clients.paypal)
        self.paymongo_adapter = PayMongoAdapter()
        self.gcash_adapter = GCashSourceAdapter(settings.deposit_amount_heuristic)
        self.paypal_adapter = PayPalAdapter()

    # === Core ===

    async def apply_event(self, event: PaymentEvent) -> dict[str, Any]:
        """Admit, transition and commit, retrying transient database failures.

        Raises DuplicateEvent / StaleEvent / RecordNotFound without changing
        anything. If the provider already moved money and the write still
        fails, the event is parked in the outbox and PartialFailure raised.
        """
        attempts = max(self.settings.persistence_retry_attempts, 1)
        last_error: Optional[SQLAlchemyError] = None

        for attempt in range(1, attempts + 1):
            try:
                return await self._apply_once(event)
            except ReconciliationError:
                await self.db.rollback()
                raise
            except SQLAlchemyError as e:
                await self.db.rollback()
                last_error = e
                logger.warning(f"[RECONCILE] Persisting {event.event_key} failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.settings.persistence_retry_base_delay * (2 ** (attempt - 1)))

        if not event.moves_money:
            raise last_error

        await self._park(event, last_error)
        raise PartialFailure(
            f"Provider confirmed {event.external_payment_id} but it could not be recorded",
            event_key=event.event_key,
        )

    async def _apply_once(self, event: PaymentEvent) -> dict[str, Any]:
        admission = await self.guard.admit(event)
        if not admission.admitted:
            raise DuplicateEvent(
                f"Event {event.event_key} already processed",
                response=admission.response,
                event_key=event.event_key,
            )

        result = await BookingStateMachine(self.db, self.ledger).apply(event)
        response = result.as_response()
        await self.guard.record_response(event.event_key, response)
        await self.db.commit()

        logger.info(
            f"[RECONCILE] {event.event_key} applied: rental {result.rental_id} "
            f"{result.rental_status.value}, payment {result.payment_status.value}, "
            f"deposit_paid={result.deposit_paid}, blocked {result.blocked_count}"
        )
        return response

    async def _park(self, event: PaymentEvent, error: Optional[Exception]) -> None:
        logger.critical(
            f"[RECONCILE] Money moved for {event.event_key} but local state is behind: {error}"
        )
        try:
            await self.jobs.enqueue_reconcile_event(event.event_key, event.to_payload())
            await self.jobs.enqueue_operator_alert(
                kind="partial_failure",
                reference=event.event_key,
                message=f"{event.provider.value} {event.external_payment_id} succeeded but was not recorded",
                details={"event": event.to_payload(), "error": str(error)},
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(f"[RECONCILE] Could not park {event.event_key}, manual recovery needed: {event.to_payload()} ({e})")

    async def _alert(self, kind: str, reference: str, message: str, details: Optional[dict[str, Any]] = None) -> None:
        logger.error(f"[ALERT] {kind} {reference}: {message}")
        try:
            await self.jobs.enqueue_operator_alert(kind, reference, message, details)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(f"[ALERT] Could not enqueue {kind} alert for {reference}: {e}")

    async def _acknowledge(self, provider: str, process: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
        """Run a webhook and turn the outcomes providers must not retry into a 200 body."""
        try:
            return await process()
        except DuplicateEvent as e:
            return {**(e.response or {"received": True}), "duplicate": True}
        except StaleEvent:
            return {"received": True, "stale": True}
        except AdapterError as e:
            logger.info(f"[WEBHOOK] {provider} event ignored: {e.message}")
            return {"received": True, "ignored": True}
        except RecordNotFound as e:
            await self._alert("record_not_found", e.context.get("event_key", provider), e.message, {"provider": provider})
            return {"received": True, "ignored": True}

    async def _apply_quietly(self, event: PaymentEvent) -> bool:
        """Apply an event on behalf of a user call. Returns True if confirmation is pending."""
        try:
            await self.apply_event(event)
        except (DuplicateEvent, StaleEvent):
            pass
        except PartialFailure:
            return True
        return False

    # === Webhooks ===

    async def handle_paymongo_webhook(self, raw_body: bytes, headers: dict[str, str]) -> dict[str, Any]:
        self.verifier.check_paymongo(raw_body, headers)

        async def process() -> dict[str, Any]:
            return await self.apply_event(self.paymongo_adapter.normalize(raw_body))

        return await self._acknowledge("paymongo", process)

    async def handle_gcash_source_webhook(
        self,
        raw_body: bytes,
        headers: dict[str, str],
        client_ip: Optional[str],
    ) -> dict[str, Any]:
        self.verifier.check_gcash_source(client_ip)

        async def process() -> dict[str, Any]:
            return await self._charge_source(self.gcash_adapter.normalize(raw_body))

        return await self._acknowledge("paymongo_source", process)

    async def handle_paypal_webhook(self, raw_body: bytes, headers: dict[str, str]) -> dict[str, Any]:
        await self.verifier.check_paypal(raw_body, headers)

        async def process() -> dict[str, Any]:
            return await self.apply_event(self.paypal_adapter.normalize(raw_body))

        return await self._acknowledge("paypal", process)

    async def _charge_source(self, event: PaymentEvent) -> dict[str, Any]:
        """Charge a chargeable GCash source once, then apply the payment's status.

        The payment id is committed before the payment's outcome is applied,
        so a redelivered webhook looks the payment up instead of charging
        the source again.
        """
        record = await self.ledger.find_for_event(event)
        if record is None:
            raise RecordNotFound(
                f"No payment record for source {event.external_payment_id}",
                event_key=event.event_key,
            )
        source_id, payment_id = record.external_id, record.payment_id
        description = f"{'Deposit' if record.is_deposit else 'Payment'} for rental {record.rental_id}"
        metadata = dict(record.flat_metadata or {})

        if payment_id is None:
            source = await self.paymongo.retrieve_source(source_id)
            if source.attributes.status != "chargeable":
                raise AdapterError(
                    f"Source {source_id} is {source.attributes.status}, not chargeable",
                    event_key=event.event_key,
                )
            amount = from_centavos(source.attributes.amount)
            if amount != record.amount:
                logger.warning(f"[GCASH] Source {source_id} amount {amount} differs from ledger {record.amount}")

            payment = await self.paymongo.create_payment_from_source(source_id, amount, description, metadata)
            try:
                await self.apply_event(replace(event, payment_id=payment.id))
            except (DuplicateEvent, StaleEvent):
                logger.info(f"[GCASH] Charge of {source_id} already recorded")
        else:
            payment = await self.paymongo.retrieve_payment(payment_id)

        return await self.apply_event(self.gcash_adapter.normalize_payment(payment, source_id))

    # === User operations ===

    async def _get_rental(self, rental_id: UUID) -> Rental:
        rental = await self.db.get(Rental, rental_id, populate_existing=True)
        if rental is None:
            raise RecordNotFound(f"Rental {rental_id} not found", rental_id=str(rental_id))
        return rental

    async def _get_record(self, provider: PaymentProvider, external_id: str) -> PaymentRecord:
        record = await self.ledger.get_by_external_id(provider, external_id)
        if record is None:
            raise RecordNotFound(f"Payment {external_id} not found", external_id=external_id)
        return record

    @staticmethod
    def _ensure_owner(rental: Rental, user: Optional[AuthenticatedUser], allow_guest: bool = True) -> None:
        """Owners and admins may act on a rental; anyone may act on a guest rental if allowed."""
        if user is not None and user.is_admin:
            return
        if rental.user_id is None and allow_guest:
            return
        if user is None or user.db_user_id is None or rental.user_id != user.db_user_id:
            raise PreconditionViolation("Unauthorized access to this rental", status_code=403, rental_id=str(rental.id))

    @staticmethod
    def _ensure_payable(rental: Rental, is_deposit: bool) -> Decimal:
        """Amount due for a new attempt of this kind, or PreconditionViolation."""
        if rental.is_terminal:
            raise PreconditionViolation(f"Rental is {rental.status.value}", status_code=409, rental_id=str(rental.id))
        if is_deposit:
            if not rental.deposit_required:
                raise PreconditionViolation("This rental does not require a deposit", rental_id=str(rental.id))
            if rental.deposit_paid:
                raise PreconditionViolation("Deposit has already been paid", status_code=409, rental_id=str(rental.id))
            return rental.deposit_amount
        if rental.payment_status == PaymentStatus.PAID:
            raise PreconditionViolation("Rental has already been paid", status_code=409, rental_id=str(rental.id))
        return rental.total_price

    def _attempt_metadata(
        self,
        rental: Rental,
        is_deposit: bool,
        user: Optional[AuthenticatedUser],
        extra: Optional[dict[str, Any]] = None,
    ) -> dict[str, str]:
        metadata: dict[str, Any] = dict(extra or {})
        metadata.update({
            "rental_id": str(rental.id),
            "is_deposit": is_deposit,
        })
        if user is not None and user.db_user_id:
            metadata["user_id"] = str(user.db_user_id)
        return flatten_metadata(metadata)

    async def _intent_status(
        self,
        record_id: UUID,
        rental_id: UUID,
        intent_status: str,
        next_action: Optional[dict[str, Any]],
        error: Optional[str],
        confirmation_pending: bool,
    ) -> dict[str, Any]:
        rental = await self._get_rental(rental_id)
        return {
            "payment_record_id": record_id,
            "rental_id": rental_id,
            "status": intent_status,
            "rental_status": rental.status.value,
            "confirmation_pending": confirmation_pending,
            "next_action": next_action,
            "last_payment_error": error,
        }

    async def create_deposit_intent(
        self,
        rental_id: UUID,
        amount: Decimal,
        user: AuthenticatedUser,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        rental = await self._get_rental(rental_id)
        self._ensure_owner(rental, user, allow_guest=False)
        due = self._ensure_payable(rental, is_deposit=True)
        if amount != due:
            raise PreconditionViolation(
                f"Deposit amount must be {due:.2f}",
                rental_id=str(rental_id),
            )

        flat = self._attempt_metadata(rental, True, user, metadata)
        intent = await self.paymongo.create_payment_intent(
            due, description or f"Deposit for rental {rental.id}", flat
        )
        record = await self.ledger.open_attempt(
            rental_id=rental.id,
            provider=PaymentProvider.PAYMONGO,
            external_id=intent.id,
            amount=due,
            currency=self.settings.currency,
            is_deposit=True,
            provider_status=intent.attributes.status,
            metadata=flat,
            client_key=intent.attributes.client_key,
        )
        await self.db.commit()

        return {
            "payment_record_id": record.id,
            "payment_intent_id": intent.id,
            "client_key": intent.attributes.client_key,
            "amount": due,
            "status": intent.attributes.status,
        }

    async def create_payment_intent(
        self,
        rental_id: UUID,
        user: Optional[AuthenticatedUser],
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        rental = await self._get_rental(rental_id)
        self._ensure_owner(rental, user)
        due = self._ensure_payable(rental, is_deposit=False)

        flat = self._attempt_metadata(rental, False, user, metadata)
        intent = await self.paymongo.create_payment_intent(
            due, description or f"Payment for rental {rental.id}", flat
        )
        record = await self.ledger.open_attempt(
            rental_id=rental.id,
            provider=PaymentProvider.PAYMONGO,
            external_id=intent.id,
            amount=due,
            currency=self.settings.currency,
            is_deposit=False,
            provider_status=intent.attributes.status,
            metadata=flat,
            client_key=intent.attributes.client_key,
        )
        await self.db.commit()

        return {
            "payment_record_id": record.id,
            "payment_intent_id": intent.id,
            "client_key": intent.attributes.client_key,
            "amount": due,
            "status": intent.attributes.status,
        }

    async def attach_payment_method(
        self,
        intent_id: str,
        payment_method_id: str,
        client_key: str,
        user: Optional[AuthenticatedUser],
        return_url: Optional[str] = None,
    ) -> dict[str, Any]:
        record = await self._get_record(PaymentProvider.PAYMONGO, intent_id)
        rental = await self._get_rental(record.rental_id)
        self._ensure_owner(rental, user)
        if not record.client_key or not hmac.compare_digest(record.client_key, client_key):
            raise PreconditionViolation("Client key does not match this payment", status_code=403)
        if record.outcome == PaymentOutcome.SUCCEEDED:
            raise PreconditionViolation("Payment has already succeeded", status_code=409)

        record_id, rental_id = record.id, rental.id
        intent = await self.paymongo.attach_payment_method(intent_id, payment_method_id, client_key, return_url)
        event = self.paymongo_adapter.normalize_intent(intent, payment_method_id=payment_method_id)
        pending = await self._apply_quietly(event)

        return await self._intent_status(
            record_id,
            rental_id,
            intent.attributes.status,
            intent.attributes.next_action,
            event.error_message,
            pending,
        )

    async def check_status(self, intent_id: str, user: Optional[AuthenticatedUser]) -> dict[str, Any]:
        """Poll PayMongo and apply what it says, through the same rules as a webhook."""
        record = await self._get_record(PaymentProvider.PAYMONGO, intent_id)
        rental = await self._get_rental(record.rental_id)
        self._ensure_owner(rental, user)

        record_id, rental_id = record.id, rental.id
        known = (record.provider_status, record.outcome)
        intent = await self.paymongo.get_payment_intent(intent_id)
        event = self.paymongo_adapter.normalize_intent(intent)

        pending = False
        if (event.raw_status, event.outcome) != known:
            pending = await self._apply_quietly(event)

        return await self._intent_status(
            record_id,
            rental_id,
            intent.attributes.status,
            intent.attributes.next_action,
            event.error_message,
            pending,
        )

    async def create_gcash_source(
        self,
        rental_id: UUID,
        is_deposit: bool,
        success_url: str,
        failure_url: str,
        billing: dict[str, Any],
        user: Optional[AuthenticatedUser],
    ) -> dict[str, Any]:
        rental = await self._get_rental(rental_id)
        self._ensure_owner(rental, user)
        due = self._ensure_payable(rental, is_deposit=is_deposit)

        flat = self._attempt_metadata(rental, is_deposit, user)
        source = await self.paymongo.create_gcash_source(due, success_url, failure_url, billing, flat)
        checkout_url = source.attributes.redirect.checkout_url if source.attributes.redirect else None
        record = await self.ledger.open_attempt(
            rental_id=rental.id,
            provider=PaymentProvider.PAYMONGO_SOURCE,
            external_id=source.id,
            amount=due,
            currency=self.settings.currency,
            is_deposit=is_deposit,
            provider_status=source.attributes.status,
            metadata=flat,
            checkout_url=checkout_url,
        )
        await self.db.commit()

        return {
            "payment_record_id": record.id,
            "source_id": source.id,
            "checkout_url": checkout_url,
            "amount": due,
            "status": source.attributes.status,
        }

    async def create_paypal_order(
        self,
        rental_id: UUID,
        is_deposit: bool,
        user: Optional[AuthenticatedUser],
    ) -> dict[str, Any]:
        rental = await self._get_rental(rental_id)
        self._ensure_owner(rental, user)
        due = self._ensure_payable(rental, is_deposit=is_deposit)

        what = "Deposit" if is_deposit else "Payment"
        order = await self.paypal.create_order(
            due,
            f"{what} for rental {rental.id}",
            reference_id=str(rental.id),
            request_id=f"order-{uuid4()}",
        )
        record = await self.ledger.open_attempt(
            rental_id=rental.id,
            provider=PaymentProvider.PAYPAL,
            external_id=order.id,
            amount=due,
            currency=self.settings.currency,
            is_deposit=is_deposit,
            provider_status=order.status,
            metadata=self._attempt_metadata(rental, is_deposit, user),
            checkout_url=order.approve_url,
        )
        await self.db.commit()

        return {
            "payment_record_id": record.id,
            "order_id": order.id,
            "status": order.status,
            "amount": due,
            "approve_url": order.approve_url,
        }

    async def capture_paypal_order(self, order_id: str, user: Optional[AuthenticatedUser]) -> dict[str, Any]:
        record = await self._get_record(PaymentProvider.PAYPAL, order_id)
        rental = await self._get_rental(record.rental_id)
        self._ensure_owner(rental, user)

        rental_id = rental.id
        if record.capture_id and record.outcome == PaymentOutcome.SUCCEEDED:
            return {
                "order_id": order_id,
                "status": "COMPLETED",
                "capture_id": record.capture_id,
                "rental_status": rental.status.value,
                "already_captured": True,
            }

        try:
            order = await self.paypal.capture_order(order_id)
        except ProviderRejected as e:
            issue = e.context.get("issue")
            if issue == "ORDER_ALREADY_CAPTURED":
                order = await self.paypal.get_order(order_id)
            else:
                if issue in PAYPAL_DECLINE_ISSUES:
                    await self._apply_quietly(self.paypal_adapter.capture_rejected(order_id, issue))
                raise

        event = self.paypal_adapter.normalize_order(order)
        pending = await self._apply_quietly(event)
        rental = await self._get_rental(rental_id)

        return {
            "order_id": order_id,
            "status": event.raw_status,
            "capture_id": event.capture_id,
            "rental_status": rental.status.value,
            "already_captured": False,
            "confirmation_pending": pending,
        }

    # === Admin ===

    async def initiate_payout(self, rental_id: UUID, reason: Optional[str], actor: AuthenticatedUser) -> Payout:
        payout = await DepositPayoutManager(self.db).payout(rental_id, reason, actor.db_user_id)
        await self.db.commit()
        return payout

    async def change_rental_status(
        self,
        rental_id: UUID,
        target: RentalStatus,
        reason: Optional[str],
        actor: AuthenticatedUser,
    ) -> Rental:
        try:
            rental = await BookingStateMachine(self.db, self.ledger).transition(
                rental_id, target, actor.db_user_id, reason
            )
        except ReconciliationError:
            await self.db.rollback()
            raise
        await self.db.commit()
        return rental

    async def override_auto_cancel(self, rental_id: UUID, actor: AuthenticatedUser) -> Rental:
        try:
            rental = await BookingStateMachine(self.db, self.ledger).override_auto_cancel(rental_id, actor.db_user_id)
        except ReconciliationError:
            await self.db.rollback()
            raise
        await self.db.commit()
        return rental

    async def process_auto_cancellations(self, now: Optional[datetime] = None) -> list[UUID]:
        cancelled = await BookingStateMachine(self.db, self.ledger).auto_cancel_due(now)
        await self.db.commit()
        return cancelled

    # === Outbox ===

    def job_handlers(self) -> dict[JobType, JobHandler]:
        return {
            JobType.RECORD_HISTORY: self._run_record_history,
            JobType.RECONCILE_PAYMENT_EVENT: self._run_reconcile_event,
            JobType.OPERATOR_ALERT: self._run_operator_alert,
        }

    async def run_jobs(self, limit: int = 10) -> tuple[int, int]:
        return await self.jobs.run_pending(self.job_handlers(), limit=limit)

    async def _run_record_history(self, payload: dict[str, Any]) -> None:
        self.db.add(BookingHistoryEntry(
            rental_id=UUID(payload["rental_id"]),
            event_type=HistoryEventType(payload["event_type"]),
            status=payload["status"],
            notes=payload.get("notes"),
            created_by=UUID(payload["created_by"]) if payload.get("created_by") else None,
        ))
        await self.db.flush()

    async def _run_reconcile_event(self, payload: dict[str, Any]) -> None:
        event = PaymentEvent.from_payload(payload["event"])
        try:
            await self.apply_event(event)
        except (DuplicateEvent, StaleEvent):
            logger.info(f"[RECONCILE] Parked event {event.event_key} already applied")

    async def _run_operator_alert(self, payload: dict[str, Any]) -> None:
        logger.critical(
            f"[ALERT] {payload.get('kind')} {payload.get('reference')}: {payload.get('message')} "
            f"{payload.get('details') or ''}"
        )


async def get_reconciler(
    db: AsyncSession = Depends(get_db),
    clients: ProviderClients = Depends(get_provider_clients),
) -> PaymentReconciler:
    return PaymentReconciler(db, get_settings(), clients)

"""In-memory doubles for the unit of work, the card gateway and the retry sink.

The fake store keeps committed state and each unit of work stages its writes,
so a failing attempt rolls back exactly like the SQLAlchemy implementation.
"""
from __future__ import annotations

import asyncio
import copy
import itertools
import json
from typing import Any, Optional

from application.dtos.payments import (
    CreateCustomer,
    CreatePaymentIntent,
    CreateSetupIntent,
    GatewayCustomer,
    PaymentIntent,
    RefundRequest,
    RefundResult,
    SetupIntent,
    WebhookEvent,
)
from application.ports.retry_sink import RetryFailureRecord
from domain.common.exceptions import (
    ConcurrentPaymentException,
    LocationNotFoundException,
    PaymentNotFoundException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.lending.entity import (
    ACTIVE_PAYMENT_STATUSES,
    AuditLogEntry,
    LendingUser,
    Location,
    Payment,
    Transaction,
    UserRole,
    utcnow,
)
from domain.lending.repository import (
    AuditLogRepository,
    LendingUserRepository,
    LocationRepository,
    PaymentRepository,
    TransactionRepository,
)


class InMemoryStore:
    def __init__(self) -> None:
        self.locations: dict[int, Location] = {}
        self.transactions: dict[int, Transaction] = {}
        self.payments: dict[int, Payment] = {}
        self.users: dict[int, LendingUser] = {}
        self.audit_logs: list[AuditLogEntry] = []
        self._ids = itertools.count(1)
        # operation name -> number of upcoming calls that raise ConnectionError
        self.failures: dict[str, int] = {}

    def next_id(self) -> int:
        return next(self._ids)

    def maybe_fail(self, operation: str) -> None:
        remaining = self.failures.get(operation, 0)
        if remaining > 0:
            self.failures[operation] = remaining - 1
            raise ConnectionError(f"{operation} unavailable")

    # seeding helpers
    def add_location(self, deposit_amount: Optional[int] = 2000, fee_bps: Optional[int] = 300, **kw) -> Location:
        location = Location(
            id=self.next_id(),
            name=kw.pop("name", "Main St Gemach"),
            deposit_amount=deposit_amount,
            processing_fee_bps=fee_bps,
            **kw,
        )
        self.locations[location.id] = location
        return location

    def add_user(self, role: UserRole, location_id: Optional[int] = None, is_admin: bool = False) -> LendingUser:
        user = LendingUser(
            id=self.next_id(),
            username=f"{role.value}-{len(self.users) + 1}",
            role=role,
            is_admin=is_admin,
            location_id=location_id,
        )
        self.users[user.id] = user
        return user

    def payments_for(self, transaction_id: int) -> list[Payment]:
        return [p for p in self.payments.values() if p.transaction_id == transaction_id]

    def audit_actions(self, entity_id: Optional[int] = None) -> list[str]:
        return [e.action for e in self.audit_logs if entity_id is None or e.entity_id == entity_id]


class _Staged:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        # location id -> inventory delta, added to the committed count on apply
        self.inventory_deltas: dict[int, int] = {}
        self.transactions: dict[int, Transaction] = {}
        self.payments: dict[int, Payment] = {}
        self.audit_logs: list[AuditLogEntry] = []

    def merged(self, name: str) -> dict[int, Any]:
        data = dict(getattr(self.store, name))
        data.update(getattr(self, name))
        return data

    def apply(self) -> None:
        for location_id, delta in self.inventory_deltas.items():
            self.store.locations[location_id].inventory_count += delta
        self.store.transactions.update(self.transactions)
        self.store.payments.update(self.payments)
        self.store.audit_logs.extend(self.audit_logs)


class FakeLocationRepository(LocationRepository):
    def __init__(self, staged: _Staged) -> None:
        self._staged = staged

    async def get_by_id(self, location_id: int) -> Optional[Location]:
        # yield like a database round trip so concurrent callers interleave
        await asyncio.sleep(0)
        location = copy.deepcopy(self._staged.store.locations.get(location_id))
        if location is not None:
            location.inventory_count += self._staged.inventory_deltas.get(location_id, 0)
        return location

    async def increment_inventory(self, location_id: int, delta: int = 1) -> int:
        await asyncio.sleep(0)
        self._staged.store.maybe_fail("locations.increment_inventory")
        if location_id not in self._staged.store.locations:
            raise LocationNotFoundException(location_id)
        self._staged.inventory_deltas[location_id] = self._staged.inventory_deltas.get(location_id, 0) + delta
        location = await self.get_by_id(location_id)
        return location.inventory_count


class FakeTransactionRepository(TransactionRepository):
    def __init__(self, staged: _Staged) -> None:
        self._staged = staged

    def _all(self) -> list[Transaction]:
        return list(self._staged.merged("transactions").values())

    async def create(self, transaction: Transaction) -> Transaction:
        self._staged.store.maybe_fail("transactions.create")
        stored = copy.deepcopy(transaction)
        stored.id = self._staged.store.next_id()
        stored.created_at = stored.updated_at = utcnow()
        if stored.borrow_date is None:
            stored.borrow_date = stored.created_at
        self._staged.transactions[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        return copy.deepcopy(self._staged.merged("transactions").get(transaction_id))

    async def get_by_setup_intent_id(self, setup_intent_id: str) -> Optional[Transaction]:
        found = [t for t in self._all() if t.stripe_setup_intent_id == setup_intent_id]
        return copy.deepcopy(found[0]) if found else None

    async def get_by_payment_intent_id(self, payment_intent_id: str) -> Optional[Transaction]:
        found = [t for t in self._all() if t.stripe_payment_intent_id == payment_intent_id]
        return copy.deepcopy(found[0]) if found else None

    async def list_by_location(self, location_id: int) -> list[Transaction]:
        return [copy.deepcopy(t) for t in self._all() if t.location_id == location_id]

    async def list_returned(self, location_id=None, start=None, end=None) -> list[Transaction]:
        rows = [t for t in self._all() if t.is_returned]
        if location_id is not None:
            rows = [t for t in rows if t.location_id == location_id]
        if start is not None:
            rows = [t for t in rows if t.actual_return_date and t.actual_return_date >= start]
        if end is not None:
            rows = [t for t in rows if t.actual_return_date and t.actual_return_date <= end]
        return [copy.deepcopy(t) for t in sorted(rows, key=lambda t: t.actual_return_date)]

    async def update(self, transaction: Transaction) -> Transaction:
        self._staged.store.maybe_fail("transactions.update")
        if transaction.id not in self._staged.merged("transactions"):
            raise TransactionNotFoundException(transaction.id)
        self._staged.transactions[transaction.id] = copy.deepcopy(transaction)
        return copy.deepcopy(transaction)


class FakePaymentRepository(PaymentRepository):
    def __init__(self, staged: _Staged) -> None:
        self._staged = staged

    def _all(self) -> list[Payment]:
        return list(self._staged.merged("payments").values())

    async def create(self, payment: Payment) -> Payment:
        self._staged.store.maybe_fail("payments.create")
        if payment.status in ACTIVE_PAYMENT_STATUSES:
            for existing in self._all():
                if existing.transaction_id == payment.transaction_id and existing.is_active:
                    raise ConcurrentPaymentException(payment.transaction_id)
        stored = copy.deepcopy(payment)
        stored.id = self._staged.store.next_id()
        stored.created_at = utcnow()
        self._staged.payments[stored.id] = stored
        return copy.deepcopy(stored)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        return copy.deepcopy(self._staged.merged("payments").get(payment_id))

    async def get_by_external_id(self, external_payment_id: str) -> Optional[Payment]:
        found = [p for p in self._all() if p.external_payment_id == external_payment_id]
        return copy.deepcopy(found[0]) if found else None

    async def list_by_transaction(self, transaction_id: int) -> list[Payment]:
        rows = [p for p in self._all() if p.transaction_id == transaction_id]
        return [copy.deepcopy(p) for p in sorted(rows, key=lambda p: p.id)]

    async def list_by_status(self, statuses) -> list[Payment]:
        return [copy.deepcopy(p) for p in self._all() if p.status in statuses]

    async def update(self, payment: Payment) -> Payment:
        if payment.id not in self._staged.merged("payments"):
            raise PaymentNotFoundException(payment.id)
        self._staged.payments[payment.id] = copy.deepcopy(payment)
        return copy.deepcopy(payment)


class FakeAuditLogRepository(AuditLogRepository):
    def __init__(self, staged: _Staged) -> None:
        self._staged = staged

    async def add(self, entry: AuditLogEntry) -> AuditLogEntry:
        stored = copy.deepcopy(entry)
        stored.id = self._staged.store.next_id()
        self._staged.audit_logs.append(stored)
        return copy.deepcopy(stored)


class FakeUserRepository(LendingUserRepository):
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def get_by_id(self, user_id: int) -> Optional[LendingUser]:
        return copy.deepcopy(self._store.users.get(user_id))


class FakeUnitOfWork(AbstractUnitOfWork):
    def __init__(self, store: InMemoryStore, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self._store = store
        self._staged: Optional[_Staged] = None

    async def __aenter__(self) -> "FakeUnitOfWork":
        self._staged = _Staged(self._store)
        self.locations = FakeLocationRepository(self._staged)
        self.transactions = FakeTransactionRepository(self._staged)
        self.payments = FakePaymentRepository(self._staged)
        self.audit_logs = FakeAuditLogRepository(self._staged)
        self.users = FakeUserRepository(self._store)
        return self

    async def commit(self) -> None:
        if self._staged is not None and not self._readonly:
            self._staged.apply()
            self._staged = _Staged(self._store)
        self._committed = True

    async def rollback(self) -> None:
        self._staged = _Staged(self._store)
        self._committed = False


def uow_factory_for(store: InMemoryStore):
    def factory(*, readonly: bool = False) -> FakeUnitOfWork:
        return FakeUnitOfWork(store, readonly=readonly)
    return factory


class FakeGateway:
    """Card gateway double that honours idempotency keys like the real processor."""

    provider = "stripe"
    publishable_key = "pk_test_fake"

    def __init__(self) -> None:
        self.charge_status = "succeeded"
        self.charge_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.intents_by_key: dict[str, PaymentIntent] = {}
        self.intents: dict[str, PaymentIntent] = {}
        self.payment_intent_requests: list[CreatePaymentIntent] = []
        self.refunds: list[RefundRequest] = []
        self.refund_attempts: list[RefundRequest] = []
        self.default_payment_methods: dict[str, str] = {}
        self.successful_charges = 0
        self._seq = itertools.count(1)

    async def create_customer(self, req: CreateCustomer) -> GatewayCustomer:
        return GatewayCustomer(customer_id=f"cus_{next(self._seq)}", provider=self.provider)

    async def create_setup_intent(self, req: CreateSetupIntent) -> SetupIntent:
        n = next(self._seq)
        return SetupIntent(
            setup_intent_id=f"seti_{n}",
            client_secret=f"seti_{n}_secret",
            status="requires_payment_method",
            provider=self.provider,
        )

    async def create_payment_intent(self, req: CreatePaymentIntent) -> PaymentIntent:
        self.payment_intent_requests.append(req)
        if req.idempotency_key and req.idempotency_key in self.intents_by_key:
            return self.intents_by_key[req.idempotency_key]
        if self.charge_error is not None:
            raise self.charge_error
        n = next(self._seq)
        status = self.charge_status if req.confirm else "requires_payment_method"
        intent = PaymentIntent(
            intent_id=f"pi_{n}",
            status=status,
            amount=req.amount,
            client_secret=f"pi_{n}_secret",
            provider=self.provider,
            last_error_code="card_declined" if status == "requires_payment_method" and req.confirm else None,
        )
        if status == "succeeded":
            self.successful_charges += 1
        if req.idempotency_key:
            self.intents_by_key[req.idempotency_key] = intent
        self.intents[intent.intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        return self.intents[intent_id]

    async def refund(self, req: RefundRequest) -> RefundResult:
        self.refund_attempts.append(req)
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append(req)
        return RefundResult(refund_id=f"re_{next(self._seq)}", status="succeeded", provider=self.provider, amount=req.amount)

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        self.default_payment_methods[customer_id] = payment_method_id

    def parse_webhook(self, headers: dict, body: bytes) -> WebhookEvent:
        payload = json.loads(body)
        return WebhookEvent(
            id=payload["id"],
            type=payload["type"],
            provider=self.provider,
            data=payload.get("data", {}),
        )


class MemoryFailureSink:
    def __init__(self) -> None:
        self.records: list[RetryFailureRecord] = []

    async def append(self, record: RetryFailureRecord) -> None:
        self.records.append(record)


async def no_sleep(_seconds: float) -> None:
    return None

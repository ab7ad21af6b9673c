"""Django ORM implementation of the ``CheckoutStore`` port.

The store runs each unit of work in ``transaction.atomic()``. On PostgreSQL
the outermost transaction is switched to SERIALIZABLE and bounded with
``lock_timeout`` and ``statement_timeout``; on every backend a wall-clock
deadline is checked before commit. Storage-level contention errors
(``OperationalError``: lock timeouts, serialization failures, cancelled
statements, SQLite's "database is locked") are translated into the
retryable ``CheckoutConflict`` at this seam so callers never see driver
exceptions for contention.

Books are locked with ``SELECT ... FOR UPDATE`` ordered by primary key, and
stock counters are only changed with guarded ``UPDATE ... SET stock = stock +
delta WHERE stock >= -delta`` statements.
"""

import time
from contextlib import contextmanager
from typing import List

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS, IntegrityError, OperationalError, connections, transaction
from django.db.models import F

from .domain import (
    BookRow,
    Checkout,
    CheckoutConflict,
    CheckoutLine,
    DuplicateReference,
    InsufficientStock,
    NewCheckout,
    PaymentMethod,
    PaymentStatus,
)
from .models import Book, CheckoutItemModel, CheckoutModel


def to_domain(obj: CheckoutModel) -> Checkout:
    """Map a ``CheckoutModel`` (and its items) to the domain ``Checkout``."""
    return Checkout(
        id=obj.id,
        user_id=obj.user_id,
        reference_number=obj.reference_number,
        total_cents=obj.total_cents,
        payment_status=PaymentStatus(obj.payment_status),
        payment_method=PaymentMethod(obj.payment_method),
        lines=[
            CheckoutLine(
                book_id=item.book_id,
                quantity=item.quantity,
                price_cents=item.price_cents,
                subtotal_cents=item.subtotal_cents,
                title=item.book.title,
                author=item.book.author,
            )
            for item in obj.items.all()
        ],
        payment_reference_number=obj.payment_reference_number,
        created_at=obj.created_at,
    )


class DjangoCheckoutStore:
    """Checkout store backed by the Django ORM.

    Args:
        lock_timeout_ms: Maximum time to wait for a row lock.
        tx_timeout_ms: Maximum wall-clock duration of a transaction.
        using: Database alias.
    """

    def __init__(self, lock_timeout_ms: int | None = None, tx_timeout_ms: int | None = None, using: str = DEFAULT_DB_ALIAS):
        self.lock_timeout_ms = lock_timeout_ms or getattr(settings, "CHECKOUT_LOCK_TIMEOUT_MS", 5000)
        self.tx_timeout_ms = tx_timeout_ms or getattr(settings, "CHECKOUT_TX_TIMEOUT_MS", 10000)
        self.using = using

    @contextmanager
    def atomic(self):
        connection = connections[self.using]
        outermost = not connection.in_atomic_block
        started = time.monotonic()
        try:
            with transaction.atomic(using=self.using):
                if connection.vendor == "postgresql":
                    self._bound_transaction(connection, outermost)
                yield
                elapsed_ms = (time.monotonic() - started) * 1000
                if elapsed_ms > self.tx_timeout_ms:
                    raise CheckoutConflict("TRANSACTION_TIMEOUT")
        except OperationalError as e:
            raise CheckoutConflict("LOCK_TIMEOUT") from e

    def _bound_transaction(self, connection, outermost: bool) -> None:
        with connection.cursor() as cur:
            if outermost:
                # Must be the first statement of the transaction
                cur.execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
            cur.execute("SELECT set_config('lock_timeout', %s, true)", [f"{self.lock_timeout_ms}ms"])
            cur.execute("SELECT set_config('statement_timeout', %s, true)", [f"{self.tx_timeout_ms}ms"])

    def lock_books(self, book_ids: List[int]) -> dict[int, BookRow]:
        rows = (
            Book.objects.using(self.using)
            .select_for_update()
            .filter(id__in=sorted(set(book_ids)))
            .order_by("id")
        )
        return {
            b.id: BookRow(
                id=b.id,
                title=b.title,
                price_cents=b.price_cents,
                stock=b.stock,
                sold_count=b.sold_count,
                is_deleted=b.is_deleted,
            )
            for b in rows
        }

    def adjust_stock(self, book_id: int, stock_delta: int, sold_delta: int) -> None:
        updated = (
            Book.objects.using(self.using)
            .filter(id=book_id, stock__gte=max(0, -stock_delta), sold_count__gte=max(0, -sold_delta))
            .update(stock=F("stock") + stock_delta, sold_count=F("sold_count") + sold_delta)
        )
        if updated != 1:
            current = Book.objects.using(self.using).filter(id=book_id).values_list("stock", flat=True).first()
            raise InsufficientStock(book_id, available=current or 0, requested=-stock_delta)

    def create_checkout(self, draft: NewCheckout) -> Checkout:
        try:
            # Savepoint: a duplicate reference only discards this insert
            with transaction.atomic(using=self.using):
                obj = CheckoutModel.objects.using(self.using).create(
                    user_id=draft.user_id,
                    reference_number=draft.reference_number,
                    total_cents=draft.total_cents,
                    payment_status=PaymentStatus.PENDING.value,
                    payment_method=draft.payment_method.value,
                )
        except IntegrityError as e:
            raise DuplicateReference(draft.reference_number) from e

        CheckoutItemModel.objects.using(self.using).bulk_create(
            [
                CheckoutItemModel(
                    checkout=obj,
                    book_id=line.book_id,
                    quantity=line.quantity,
                    price_cents=line.price_cents,
                    subtotal_cents=line.subtotal_cents,
                )
                for line in draft.lines
            ]
        )
        return to_domain(obj)

    def lock_checkout(self, reference_number: str) -> Checkout | None:
        obj = (
            CheckoutModel.objects.using(self.using)
            .select_for_update()
            .filter(reference_number=reference_number)
            .first()
        )
        return to_domain(obj) if obj else None

    def mark_settled(self, checkout_id: int, status: PaymentStatus, payment_reference_number: str) -> Checkout:
        obj = CheckoutModel.objects.using(self.using).get(pk=checkout_id)
        obj.payment_status = status.value
        obj.payment_reference_number = payment_reference_number
        obj.save(update_fields=["payment_status", "payment_reference_number", "updated_at"])
        return to_domain(obj)

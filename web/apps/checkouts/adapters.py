"""In-process stub adapters for the checkout domain ports.

These stubs implement ``CartPort`` and ``CheckoutStore`` without any
database or network calls. They are intended for unit tests and local
development where deterministic behavior is useful and external services
are not required.

``InMemoryCheckoutStore`` keeps the same locking contract as the database
store: one ``threading.Lock`` per book (and per checkout), acquired in
ascending id order with a bounded wait, held until the transaction ends.
Writes are journaled so an exception inside ``atomic()`` restores the
previous state.
"""

import itertools
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List

from .domain import (
    BookRow,
    CartLine,
    CartSnapshot,
    Checkout,
    CheckoutConflict,
    DuplicateReference,
    EmptyCart,
    InsufficientStock,
    NewCheckout,
    PaymentStatus,
)


class InMemoryCart:
    """Stub implementation of ``CartPort`` keyed by user id."""

    def __init__(self):
        self._lines: Dict[int, List[CartLine]] = {}
        self._lock = threading.Lock()
        self.cleared: List[int] = []

    def add(self, user_id: int, line: CartLine) -> None:
        with self._lock:
            self._lines.setdefault(user_id, []).append(line)

    def get_snapshot_for_checkout(self, user_id: int) -> CartSnapshot:
        with self._lock:
            lines = list(self._lines.get(user_id, []))
        if not lines:
            raise EmptyCart()
        return CartSnapshot(user_id=user_id, lines=lines)

    def clear(self, user_id: int) -> None:
        with self._lock:
            self._lines.pop(user_id, None)
            self.cleared.append(user_id)


@dataclass
class _Tx:
    started: float
    held: List[threading.Lock] = field(default_factory=list)
    keys: set = field(default_factory=set)
    undo: list = field(default_factory=list)


class InMemoryCheckoutStore:
    """Stub implementation of ``CheckoutStore``.

    Args:
        books: Initial inventory rows.
        lock_timeout: Seconds to wait for a single lock.
        tx_timeout: Maximum seconds a transaction may last.
    """

    def __init__(self, books=(), lock_timeout: float = 5.0, tx_timeout: float = 10.0):
        self.lock_timeout = lock_timeout
        self.tx_timeout = tx_timeout
        self._books: Dict[int, BookRow] = {b.id: b for b in books}
        self._checkouts: Dict[str, Checkout] = {}
        self._locks: Dict[tuple, threading.Lock] = {}
        self._guard = threading.Lock()
        self._ids = itertools.count(1)
        self._local = threading.local()

    # ---- inspection helpers (tests, local dev) ----
    def add_book(self, book: BookRow) -> None:
        with self._guard:
            self._books[book.id] = book

    def book(self, book_id: int) -> BookRow:
        return self._books[book_id]

    def checkout(self, reference_number: str) -> Checkout:
        return self._checkouts[reference_number]

    def checkouts(self) -> List[Checkout]:
        return list(self._checkouts.values())

    # ---- port ----
    @contextmanager
    def atomic(self):
        if getattr(self._local, "tx", None) is not None:
            # Nested call joins the current transaction
            yield
            return
        tx = _Tx(started=time.monotonic())
        self._local.tx = tx
        try:
            yield
            if time.monotonic() - tx.started > self.tx_timeout:
                raise CheckoutConflict("TRANSACTION_TIMEOUT")
        except BaseException:
            for undo in reversed(tx.undo):
                undo()
            raise
        finally:
            self._local.tx = None
            for lock in reversed(tx.held):
                lock.release()

    def _tx(self) -> _Tx:
        tx = getattr(self._local, "tx", None)
        if tx is None:
            raise RuntimeError("store operation outside atomic()")
        return tx

    def _acquire(self, key: tuple) -> None:
        tx = self._tx()
        if key in tx.keys:
            return
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        if not lock.acquire(timeout=self.lock_timeout):
            raise CheckoutConflict("LOCK_TIMEOUT")
        tx.held.append(lock)
        tx.keys.add(key)

    def lock_books(self, book_ids: List[int]) -> dict[int, BookRow]:
        found = {}
        for book_id in sorted(set(book_ids)):
            self._acquire(("book", book_id))
            if book_id in self._books:
                found[book_id] = self._books[book_id]
        return found

    def adjust_stock(self, book_id: int, stock_delta: int, sold_delta: int) -> None:
        tx = self._tx()
        if ("book", book_id) not in tx.keys:
            raise RuntimeError(f"book {book_id} is not locked")
        book = self._books[book_id]
        if book.stock + stock_delta < 0 or book.sold_count + sold_delta < 0:
            raise InsufficientStock(book_id, available=book.stock, requested=-stock_delta)
        self._books[book_id] = replace(book, stock=book.stock + stock_delta, sold_count=book.sold_count + sold_delta)
        tx.undo.append(lambda: self._books.__setitem__(book_id, book))

    def create_checkout(self, draft: NewCheckout) -> Checkout:
        tx = self._tx()
        with self._guard:
            if draft.reference_number in self._checkouts:
                raise DuplicateReference(draft.reference_number)
            checkout = Checkout(
                id=next(self._ids),
                user_id=draft.user_id,
                reference_number=draft.reference_number,
                total_cents=draft.total_cents,
                payment_status=PaymentStatus.PENDING,
                payment_method=draft.payment_method,
                lines=list(draft.lines),
                created_at=datetime.now(timezone.utc),
            )
            self._checkouts[draft.reference_number] = checkout
        tx.undo.append(lambda: self._checkouts.pop(draft.reference_number, None))
        return replace(checkout)

    def lock_checkout(self, reference_number: str) -> Checkout | None:
        self._acquire(("checkout", reference_number))
        checkout = self._checkouts.get(reference_number)
        return replace(checkout) if checkout else None

    def mark_settled(self, checkout_id: int, status: PaymentStatus, payment_reference_number: str) -> Checkout:
        tx = self._tx()
        current = next(c for c in self._checkouts.values() if c.id == checkout_id)
        updated = replace(current, payment_status=status, payment_reference_number=payment_reference_number)
        self._checkouts[current.reference_number] = updated
        tx.undo.append(lambda: self._checkouts.__setitem__(current.reference_number, current))
        return replace(updated)

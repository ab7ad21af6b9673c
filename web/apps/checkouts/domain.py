"""Domain models, ports and services for checkouts.

This module contains the dataclasses exchanged between the checkout core and
its collaborators, the error taxonomy, protocol definitions (ports) for the
cart and the checkout store, and the two domain services:

- ``CheckoutService`` converts a buyer's cart into a PENDING checkout inside
  a single store transaction, locking the affected books in ascending id
  order and decrementing their stock.
- ``PaymentReconciler`` applies a payment-gateway callback to a checkout,
  idempotently, restoring stock when the payment failed.

Neither service performs I/O directly: persistence and locking go through
``CheckoutStore`` and the cart through ``CartPort``.
"""

import logging
from collections import Counter
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol

from . import reference

logger = logging.getLogger("checkouts")

REFERENCE_ATTEMPTS = 3


# ---- Enums ----
class PaymentStatus(str, Enum):
    """Payment lifecycle of a checkout. PAID and FAILED are terminal."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentMethod(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    E_WALLET = "E_WALLET"
    CASH = "CASH"


class GatewayStatus(str, Enum):
    """Outcome reported by the payment gateway callback."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


# ---- Errors ----
class CheckoutError(ValueError):
    """Base class for checkout and reconciliation failures.

    ``str(err)`` is the short error code; ``as_dict()`` adds the details a
    client needs to correct the request.
    """

    code = "CHECKOUT_ERROR"
    retryable = False

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)

    def as_dict(self) -> dict:
        return {"detail": self.code}


class EmptyCart(CheckoutError):
    code = "EMPTY_CART"


class BookUnavailable(CheckoutError):
    code = "BOOK_UNAVAILABLE"

    def __init__(self, book_id: int, title: str = ""):
        self.book_id = book_id
        self.title = title
        super().__init__()

    def as_dict(self) -> dict:
        return {"detail": self.code, "book_id": self.book_id, "title": self.title}


class InsufficientStock(CheckoutError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, book_id: int, available: int, requested: int, title: str = ""):
        self.book_id = book_id
        self.available = available
        self.requested = requested
        self.title = title
        super().__init__()

    def as_dict(self) -> dict:
        return {
            "detail": self.code,
            "book_id": self.book_id,
            "title": self.title,
            "available": self.available,
            "requested": self.requested,
        }


class PriceChanged(CheckoutError):
    code = "PRICE_CHANGED"

    def __init__(self, book_id: int, cart_price_cents: int, current_price_cents: int, title: str = ""):
        self.book_id = book_id
        self.cart_price_cents = cart_price_cents
        self.current_price_cents = current_price_cents
        self.title = title
        super().__init__()

    def as_dict(self) -> dict:
        return {
            "detail": self.code,
            "book_id": self.book_id,
            "title": self.title,
            "cart_price_cents": self.cart_price_cents,
            "current_price_cents": self.current_price_cents,
        }


class CheckoutConflict(CheckoutError):
    """Lock wait, serialization failure or transaction deadline exceeded.

    The whole operation may be retried from scratch.
    """

    code = "CHECKOUT_CONFLICT"
    retryable = True

    def __init__(self, reason: str = "LOCK_TIMEOUT"):
        self.reason = reason
        super().__init__()

    def as_dict(self) -> dict:
        return {"detail": self.code, "reason": self.reason}


class DuplicateReference(CheckoutError):
    """Raised by a store when the reference number is already taken."""

    code = "DUPLICATE_REFERENCE"


class OrderNotFound(CheckoutError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, reference_number: str):
        self.reference_number = reference_number
        super().__init__()

    def as_dict(self) -> dict:
        return {"detail": self.code, "reference_number": self.reference_number}


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CartLine:
    """A line of the buyer's cart as captured when it was read.

    Attributes:
        book_id: Catalog id of the book.
        title: Book title at the time the item was added.
        author: Book author at the time the item was added.
        unit_price_cents: Price captured by the cart, in integer cents.
        quantity: Number of units requested.
    """

    book_id: int
    title: str
    author: str
    unit_price_cents: int
    quantity: int

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class CartSnapshot:
    user_id: int
    lines: List[CartLine]

    @property
    def total_cents(self) -> int:
        return sum(line.subtotal_cents for line in self.lines)


@dataclass(frozen=True)
class BookRow:
    """Locked view of an inventory row."""

    id: int
    title: str
    price_cents: int
    stock: int
    sold_count: int
    is_deleted: bool = False


@dataclass(frozen=True)
class CheckoutLine:
    book_id: int
    quantity: int
    price_cents: int
    subtotal_cents: int
    title: str = ""
    author: str = ""


@dataclass(frozen=True)
class NewCheckout:
    """Everything a store needs to persist a PENDING checkout."""

    user_id: int
    reference_number: str
    payment_method: PaymentMethod
    total_cents: int
    lines: List[CheckoutLine]


@dataclass
class Checkout:
    """Container for persisted checkout data.

    Attributes:
        id: Store identifier.
        user_id: Buyer id.
        reference_number: Public, immutable reference (``CHK-...``).
        total_cents: Sum of the line subtotals.
        payment_status: Current PaymentStatus.
        payment_method: PaymentMethod chosen by the buyer.
        lines: Purchased lines with the price captured at purchase time.
        payment_reference_number: Gateway id, set when settled.
        created_at: Creation timestamp, when the store records one.
    """

    id: int
    user_id: int
    reference_number: str
    total_cents: int
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    lines: List[CheckoutLine] = field(default_factory=list)
    payment_reference_number: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentCallback:
    """Payment gateway notification, as carried by the callback queue."""

    checkout_reference_number: str
    status: GatewayStatus
    payment_reference_number: str


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of reconciling one callback.

    ``applied`` is False when the message changed nothing: the checkout was
    already settled, or the gateway still reports the payment as pending.
    """

    reference_number: str
    payment_status: PaymentStatus
    applied: bool


# ---- Ports (DIP) ----
class CartPort(Protocol):
    """Port describing the cart operations consumed at checkout."""

    def get_snapshot_for_checkout(self, user_id: int) -> CartSnapshot:
        """Return the buyer's current cart.

        Raises:
            EmptyCart: If the cart has no lines.
        """
        raise NotImplementedError()

    def clear(self, user_id: int) -> None:
        """Empty the buyer's cart. Idempotent."""
        raise NotImplementedError()


class CheckoutStore(Protocol):
    """Port describing the transactional storage used by the core.

    Every method other than ``atomic`` must be called inside ``atomic()``.
    ``adjust_stock`` may only be called for books locked by ``lock_books``
    in the same transaction.
    """

    def atomic(self) -> AbstractContextManager:
        """Open a transaction; any exception rolls it back.

        Raises:
            CheckoutConflict: When a lock cannot be acquired in time, the
                transaction cannot be serialized, or its deadline expires.
        """
        raise NotImplementedError()

    def lock_books(self, book_ids: List[int]) -> dict[int, BookRow]:
        """Lock the given books in ascending id order and return those found."""
        raise NotImplementedError()

    def adjust_stock(self, book_id: int, stock_delta: int, sold_delta: int) -> None:
        """Apply deltas to ``stock`` and ``sold_count`` of a locked book.

        Raises:
            InsufficientStock: If the update would make a counter negative.
        """
        raise NotImplementedError()

    def create_checkout(self, draft: NewCheckout) -> Checkout:
        """Persist a PENDING checkout with its lines.

        Raises:
            DuplicateReference: If the reference number already exists.
        """
        raise NotImplementedError()

    def lock_checkout(self, reference_number: str) -> Checkout | None:
        """Lock and return a checkout by reference, or None."""
        raise NotImplementedError()

    def mark_settled(self, checkout_id: int, status: PaymentStatus, payment_reference_number: str) -> Checkout:
        """Record a terminal payment status and the gateway reference."""
        raise NotImplementedError()


def _demand(lines) -> dict[int, int]:
    """Sum quantities per book id, keyed in ascending id order."""
    counter: Counter = Counter()
    for line in lines:
        counter[line.book_id] += line.quantity
    return dict(sorted(counter.items()))


# ---- Domain services ----
class CheckoutService:
    """Domain service converting a cart into a checkout.

    The conversion is all-or-nothing: books are locked, every line is
    re-validated against the locked rows, then the checkout, its lines and
    the stock decrements are written in the same transaction. The cart is
    cleared only after the transaction committed.
    """

    def __init__(
        self,
        cart: CartPort,
        store: CheckoutStore,
        references: Callable[[], str] = reference.generate,
    ):
        """Initialize the service with required dependencies.

        Args:
            cart: CartPort used to read and clear the buyer's cart.
            store: CheckoutStore providing transactions and row locks.
            references: Reference number factory.
        """
        self.cart = cart
        self.store = store
        self.references = references

    def create_checkout(self, user_id: int, payment_method: PaymentMethod) -> Checkout:
        """Create a PENDING checkout from the buyer's cart.

        Args:
            user_id: Buyer id.
            payment_method: Payment method selected by the buyer.

        Returns:
            The persisted Checkout.

        Raises:
            EmptyCart: The cart has no lines.
            BookUnavailable: A book is missing or soft-deleted.
            InsufficientStock: A book has fewer units than requested.
            PriceChanged: A book's price differs from the cart's captured price.
            CheckoutConflict: Lock wait, serialization or deadline failure;
                the caller may retry the whole operation.
        """
        snapshot = self.cart.get_snapshot_for_checkout(user_id)
        if not snapshot.lines:
            raise EmptyCart()

        demand = _demand(snapshot.lines)

        with self.store.atomic():
            books = self.store.lock_books(list(demand))
            lines = self._validate(snapshot.lines, books, demand)
            checkout = self._insert(user_id, payment_method, lines)
            for book_id, quantity in demand.items():
                self.store.adjust_stock(book_id, -quantity, quantity)

        logger.info(
            "checkout created",
            extra={
                "reference_number": checkout.reference_number,
                "user_id": user_id,
                "total_cents": checkout.total_cents,
            },
        )

        try:
            self.cart.clear(user_id)
        except Exception:
            # The checkout stands; clearing can be retried by the cart owner.
            logger.warning("cart clear failed", extra={"user_id": user_id}, exc_info=True)

        return checkout

    def _validate(self, cart_lines, books: dict[int, BookRow], demand: dict[int, int]) -> List[CheckoutLine]:
        lines = []
        for line in cart_lines:
            book = books.get(line.book_id)
            if book is None or book.is_deleted:
                raise BookUnavailable(line.book_id, line.title)
            requested = demand[line.book_id]
            if book.stock < requested:
                raise InsufficientStock(line.book_id, available=book.stock, requested=requested, title=line.title)
            if book.price_cents != line.unit_price_cents:
                raise PriceChanged(line.book_id, line.unit_price_cents, book.price_cents, title=line.title)
            lines.append(
                CheckoutLine(
                    book_id=line.book_id,
                    quantity=line.quantity,
                    price_cents=book.price_cents,
                    subtotal_cents=book.price_cents * line.quantity,
                    title=line.title,
                    author=line.author,
                )
            )
        return lines

    def _insert(self, user_id: int, payment_method: PaymentMethod, lines: List[CheckoutLine]) -> Checkout:
        total = sum(line.subtotal_cents for line in lines)
        for attempt in range(1, REFERENCE_ATTEMPTS + 1):
            draft = NewCheckout(
                user_id=user_id,
                reference_number=self.references(),
                payment_method=PaymentMethod(payment_method),
                total_cents=total,
                lines=lines,
            )
            try:
                return self.store.create_checkout(draft)
            except DuplicateReference:
                logger.warning(
                    "reference collision",
                    extra={"reference_number": draft.reference_number, "attempt": attempt},
                )
        raise CheckoutConflict("REFERENCE_COLLISION")


class PaymentReconciler:
    """Applies payment-gateway callbacks to checkouts.

    Safe to invoke more than once with the same message: the checkout row is
    locked and its terminal state checked before any side effect, so a
    redelivered callback for a settled checkout changes nothing.
    """

    def __init__(self, store: CheckoutStore):
        self.store = store

    def handle(self, message: PaymentCallback) -> ReconcileResult:
        """Reconcile a callback against its checkout.

        Args:
            message: The gateway notification.

        Returns:
            ReconcileResult describing the checkout's status afterwards.

        Raises:
            OrderNotFound: No checkout has this reference; retrying cannot help.
            CheckoutConflict: Locks could not be taken in time; retryable.
        """
        ref = message.checkout_reference_number
        if not reference.is_valid(ref):
            raise OrderNotFound(ref)

        status = GatewayStatus(message.status)

        with self.store.atomic():
            checkout = self.store.lock_checkout(ref)
            if checkout is None:
                raise OrderNotFound(ref)

            if checkout.payment_status.is_terminal:
                logger.info(
                    "callback for settled checkout ignored",
                    extra={"reference_number": ref, "payment_status": checkout.payment_status.value},
                )
                return ReconcileResult(ref, checkout.payment_status, applied=False)

            if status is GatewayStatus.PENDING:
                return ReconcileResult(ref, checkout.payment_status, applied=False)

            if status is GatewayStatus.FAILED:
                demand = _demand(checkout.lines)
                self.store.lock_books(list(demand))
                for book_id, quantity in demand.items():
                    self.store.adjust_stock(book_id, quantity, -quantity)
                target = PaymentStatus.FAILED
            else:
                target = PaymentStatus.PAID

            settled = self.store.mark_settled(checkout.id, target, message.payment_reference_number)

        logger.info(
            "checkout settled",
            extra={
                "reference_number": ref,
                "payment_status": settled.payment_status.value,
                "payment_reference_number": message.payment_reference_number,
            },
        )
        return ReconcileResult(ref, settled.payment_status, applied=True)

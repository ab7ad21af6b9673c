"""Integration tests for ``DjangoCheckoutStore`` on the test database.

These tests run the domain services on top of the ORM store and assert
the persisted rows directly.
"""
import itertools

import pytest
from django.db import OperationalError

from apps.checkouts.domain import (
    CheckoutConflict,
    CheckoutService,
    GatewayStatus,
    InsufficientStock,
    PaymentCallback,
    PaymentMethod,
    PaymentReconciler,
    PaymentStatus,
    PriceChanged,
)
from apps.checkouts.models import CheckoutItemModel, CheckoutModel
from apps.checkouts.repository import DjangoCheckoutStore

USER = 42


@pytest.mark.django_db
def test_checkout_persists_rows_and_decrements_stock(cart, make_book, add_to_cart):
    dune = make_book(title="Dune", price_cents=1500, stock=5)
    emma = make_book(title="Emma", price_cents=990, stock=2, sold_count=1)
    add_to_cart(USER, dune, quantity=2)
    add_to_cart(USER, emma, quantity=2)

    checkout = CheckoutService(cart, DjangoCheckoutStore()).create_checkout(USER, PaymentMethod.CREDIT_CARD)

    row = CheckoutModel.objects.get(reference_number=checkout.reference_number)
    assert row.user_id == USER
    assert row.payment_status == "PENDING"
    assert row.payment_method == "CREDIT_CARD"
    assert row.total_cents == 2 * 1500 + 2 * 990
    items = list(CheckoutItemModel.objects.filter(checkout=row).values_list("book_id", "quantity", "price_cents", "subtotal_cents"))
    assert items == [(dune.id, 2, 1500, 3000), (emma.id, 2, 990, 1980)]

    dune.refresh_from_db()
    emma.refresh_from_db()
    assert (dune.stock, dune.sold_count) == (3, 2)
    assert (emma.stock, emma.sold_count) == (0, 3)
    assert cart.cleared == [USER]


@pytest.mark.django_db
def test_validation_failure_rolls_back_everything(cart, make_book, add_to_cart):
    dune = make_book(price_cents=1500, stock=5)
    emma = make_book(title="Emma", price_cents=990, stock=5)
    add_to_cart(USER, dune, quantity=1)
    add_to_cart(USER, emma, quantity=1, unit_price_cents=900)

    with pytest.raises(PriceChanged):
        CheckoutService(cart, DjangoCheckoutStore()).create_checkout(USER, PaymentMethod.CASH)

    assert CheckoutModel.objects.count() == 0
    assert CheckoutItemModel.objects.count() == 0
    dune.refresh_from_db()
    assert dune.stock == 5 and dune.sold_count == 0


@pytest.mark.django_db
def test_guarded_update_refuses_negative_stock(make_book):
    book = make_book(stock=1)
    store = DjangoCheckoutStore()

    with pytest.raises(InsufficientStock) as exc:
        with store.atomic():
            store.lock_books([book.id])
            store.adjust_stock(book.id, -2, 2)

    assert exc.value.available == 1
    book.refresh_from_db()
    assert book.stock == 1 and book.sold_count == 0


@pytest.mark.django_db
def test_operational_error_becomes_checkout_conflict():
    store = DjangoCheckoutStore()
    with pytest.raises(CheckoutConflict) as exc:
        with store.atomic():
            raise OperationalError("could not obtain lock on row")
    assert exc.value.reason == "LOCK_TIMEOUT"


@pytest.mark.django_db
def test_transaction_deadline_is_enforced(make_book, monkeypatch):
    book = make_book(stock=3)
    store = DjangoCheckoutStore(tx_timeout_ms=10)
    ticks = itertools.count(100.0, 0.5)
    monkeypatch.setattr("apps.checkouts.repository.time.monotonic", lambda: next(ticks))

    with pytest.raises(CheckoutConflict) as exc:
        with store.atomic():
            store.lock_books([book.id])
            store.adjust_stock(book.id, -1, 1)

    assert exc.value.reason == "TRANSACTION_TIMEOUT"
    book.refresh_from_db()
    assert book.stock == 3


@pytest.mark.django_db
def test_reconciler_on_orm_store(cart, make_book, add_to_cart):
    book = make_book(price_cents=2000, stock=4, sold_count=6)
    add_to_cart(USER, book, quantity=3)
    store = DjangoCheckoutStore()
    checkout = CheckoutService(cart, store).create_checkout(USER, PaymentMethod.E_WALLET)
    msg = PaymentCallback(checkout.reference_number, GatewayStatus.FAILED, "PAY-9")

    first = PaymentReconciler(store).handle(msg)
    second = PaymentReconciler(store).handle(msg)

    assert first.applied and not second.applied
    row = CheckoutModel.objects.get(pk=checkout.id)
    assert row.payment_status == PaymentStatus.FAILED.value
    assert row.payment_reference_number == "PAY-9"
    book.refresh_from_db()
    assert (book.stock, book.sold_count) == (4, 6)


@pytest.mark.django_db
def test_lock_books_returns_only_existing_rows(make_book):
    book = make_book()
    store = DjangoCheckoutStore()
    with store.atomic():
        rows = store.lock_books([book.id + 1000, book.id])
    assert list(rows) == [book.id]
    assert rows[book.id].price_cents == book.price_cents


def test_store_reads_bounds_from_settings(settings):
    settings.CHECKOUT_LOCK_TIMEOUT_MS = 1234
    settings.CHECKOUT_TX_TIMEOUT_MS = 5678
    store = DjangoCheckoutStore()
    assert (store.lock_timeout_ms, store.tx_timeout_ms) == (1234, 5678)

import pytest
from django.core.cache import cache

from apps.checkouts import providers
from apps.checkouts.adapters import InMemoryCart
from apps.checkouts.domain import CartLine
from apps.checkouts.models import Book


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False


@pytest.fixture(autouse=True)
def reset_throttles():
    # Throttle history lives in the default cache
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def cart(monkeypatch):
    """Fresh in-memory cart wired into the providers."""
    c = InMemoryCart()
    monkeypatch.setattr(providers, "local_cart", c)
    return c


@pytest.fixture
def make_book(db):
    def _make(title="Dune", author="Frank Herbert", price_cents=1500, stock=10, sold_count=0, is_deleted=False):
        return Book.objects.create(
            title=title,
            author=author,
            price_cents=price_cents,
            stock=stock,
            sold_count=sold_count,
            is_deleted=is_deleted,
        )

    return _make


@pytest.fixture
def add_to_cart(cart):
    def _add(user_id, book, quantity=1, unit_price_cents=None):
        cart.add(
            user_id,
            CartLine(
                book_id=book.id,
                title=book.title,
                author=book.author,
                unit_price_cents=book.price_cents if unit_price_cents is None else unit_price_cents,
                quantity=quantity,
            ),
        )

    return _add

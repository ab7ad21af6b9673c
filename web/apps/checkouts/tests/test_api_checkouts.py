"""API tests for the checkouts endpoints.

These tests drive the HTTP API through Django's test client with the
in-process cart (``USE_HTTP_ADAPTERS=False``) and the real ORM store.
"""
import pytest

from apps.checkouts import idempotency, providers
from apps.checkouts.domain import CheckoutConflict
from apps.checkouts.http_adapters import cart_circuit
from apps.checkouts.models import CheckoutModel, IdempotencyKey, PaymentCallbackJob

CHECKOUTS_URL = "/api/checkouts/"
CALLBACK_URL = "/api/checkouts/payment-callback/"
USER = 5
AUTH = {"HTTP_X_USER_ID": str(USER)}


def post_checkout(client, payload=None, **headers):
    return client.post(
        CHECKOUTS_URL,
        data=payload if payload is not None else {"payment_method": "CREDIT_CARD"},
        content_type="application/json",
        **{**AUTH, **headers},
    )


@pytest.mark.django_db
def test_create_checkout_returns_201(client, make_book, add_to_cart):
    book = make_book(price_cents=1500, stock=4)
    add_to_cart(USER, book, quantity=2)

    r = post_checkout(client)

    assert r.status_code == 201
    body = r.json()
    assert body["reference_number"].startswith("CHK-")
    assert body["payment_status"] == "PENDING"
    assert body["payment_method"] == "CREDIT_CARD"
    assert body["total_cents"] == 3000
    assert body["items"] == [
        {
            "book_id": book.id,
            "title": "Dune",
            "author": "Frank Herbert",
            "quantity": 2,
            "price_cents": 1500,
            "subtotal_cents": 3000,
        }
    ]
    assert "payment_reference_number" not in body
    assert r.headers["X-Request-ID"]
    book.refresh_from_db()
    assert book.stock == 2


@pytest.mark.django_db
def test_payment_method_is_case_insensitive(client, make_book, add_to_cart):
    add_to_cart(USER, make_book())
    r = post_checkout(client, {"payment_method": "bank_transfer"})
    assert r.status_code == 201
    assert r.json()["payment_method"] == "BANK_TRANSFER"


@pytest.mark.django_db
def test_invalid_payment_method_returns_400(client, cart):
    r = post_checkout(client, {"payment_method": "BITCOIN"})
    assert r.status_code == 400


@pytest.mark.django_db
def test_missing_user_returns_401(client, cart):
    r = client.post(CHECKOUTS_URL, data={"payment_method": "CASH"}, content_type="application/json")
    assert r.status_code == 401
    assert r.json()["detail"] == "UNAUTHENTICATED"


@pytest.mark.django_db
def test_empty_cart_returns_400(client, cart):
    r = post_checkout(client)
    assert r.status_code == 400
    assert r.json()["detail"] == "EMPTY_CART"


@pytest.mark.django_db
def test_insufficient_stock_returns_422_with_available(client, make_book, add_to_cart):
    book = make_book(title="Emma", stock=1)
    add_to_cart(USER, book, quantity=3)

    r = post_checkout(client)

    assert r.status_code == 422
    body = r.json()
    assert body["detail"] == "INSUFFICIENT_STOCK"
    assert body["available"] == 1 and body["requested"] == 3
    assert body["title"] == "Emma"
    assert CheckoutModel.objects.count() == 0


@pytest.mark.django_db
def test_deleted_book_returns_422(client, make_book, add_to_cart):
    add_to_cart(USER, make_book(is_deleted=True))
    r = post_checkout(client)
    assert r.status_code == 422
    assert r.json()["detail"] == "BOOK_UNAVAILABLE"


@pytest.mark.django_db
def test_price_changed_returns_409(client, make_book, add_to_cart):
    add_to_cart(USER, make_book(price_cents=1500), unit_price_cents=1200)
    r = post_checkout(client)
    assert r.status_code == 409
    assert r.json()["current_price_cents"] == 1500


@pytest.mark.django_db
def test_conflict_returns_503_with_retry_after(client, cart, monkeypatch):
    class Contended:
        def create_checkout(self, user_id, payment_method):
            raise CheckoutConflict("LOCK_TIMEOUT")

    monkeypatch.setattr(providers, "get_checkout_service", lambda: Contended())

    r = post_checkout(client, HTTP_IDEMPOTENCY_KEY="idem-503")

    assert r.status_code == 503
    assert r["Retry-After"] == "1"
    assert r.json() == {"detail": "CHECKOUT_CONFLICT", "reason": "LOCK_TIMEOUT"}
    # retryable failures do not pin the key
    assert not IdempotencyKey.objects.filter(key="idem-503").exists()


@pytest.mark.django_db
def test_idempotent_retry_replays_first_response(client, make_book, add_to_cart):
    book = make_book(stock=5)
    add_to_cart(USER, book, quantity=1)

    r1 = post_checkout(client, HTTP_IDEMPOTENCY_KEY="idem-1")
    add_to_cart(USER, book, quantity=1)
    r2 = post_checkout(client, HTTP_IDEMPOTENCY_KEY="idem-1")

    assert r1.status_code == r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert CheckoutModel.objects.count() == 1
    book.refresh_from_db()
    assert book.stock == 4


@pytest.mark.django_db
def test_idempotency_key_reused_with_other_payload_returns_409(client, make_book, add_to_cart):
    add_to_cart(USER, make_book())
    r1 = post_checkout(client, {"payment_method": "CASH"}, HTTP_IDEMPOTENCY_KEY="idem-2")
    r2 = post_checkout(client, {"payment_method": "E_WALLET"}, HTTP_IDEMPOTENCY_KEY="idem-2")
    assert r1.status_code == 201
    assert r2.status_code == 409
    assert r2.json()["detail"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_idempotent_replay_preserves_422(client, make_book, add_to_cart):
    add_to_cart(USER, make_book(stock=0), quantity=1)
    r1 = post_checkout(client, HTTP_IDEMPOTENCY_KEY="idem-3")
    r2 = post_checkout(client, HTTP_IDEMPOTENCY_KEY="idem-3")
    assert r1.status_code == r2.status_code == 422
    assert r2.headers.get("Idempotent-Replay") == "true"


@pytest.mark.django_db
def test_list_is_paginated_newest_first_and_scoped_to_user(client, make_book, add_to_cart):
    book = make_book(stock=10)
    refs = []
    for _ in range(3):
        add_to_cart(USER, book)
        refs.append(post_checkout(client).json()["reference_number"])
    add_to_cart(USER + 1, book)
    post_checkout(client, HTTP_X_USER_ID=str(USER + 1))

    r = client.get(CHECKOUTS_URL, {"page": 1, "page_size": 2}, **AUTH)

    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 3
    assert body["total_pages"] == 2
    assert [c["reference_number"] for c in body["results"]] == refs[::-1][:2]

    r2 = client.get(CHECKOUTS_URL, {"page": 2, "page_size": 2}, **AUTH)
    assert [c["reference_number"] for c in r2.json()["results"]] == refs[:1]


@pytest.mark.django_db
def test_list_rejects_invalid_pagination(client):
    r = client.get(CHECKOUTS_URL, {"page": "abc"}, **AUTH)
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAGINATION"


@pytest.mark.django_db
def test_detail_by_reference(client, make_book, add_to_cart):
    add_to_cart(USER, make_book())
    ref = post_checkout(client).json()["reference_number"]

    r = client.get(f"{CHECKOUTS_URL}{ref}/", **AUTH)
    assert r.status_code == 200
    assert r.json()["reference_number"] == ref

    other = client.get(f"{CHECKOUTS_URL}{ref}/", HTTP_X_USER_ID=str(USER + 1))
    assert other.status_code == 404


@pytest.mark.django_db
def test_detail_unknown_reference_returns_404(client):
    r = client.get(f"{CHECKOUTS_URL}CHK-20250101000000-ABCDEF/", **AUTH)
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_payment_callback_is_queued(client):
    payload = {
        "checkoutReferenceNumber": "CHK-20250101000000-ABCDEF",
        "status": "success",
        "paymentReferenceNumber": "PAY-123",
    }
    r = client.post(CALLBACK_URL, data=payload, content_type="application/json")

    assert r.status_code == 202
    assert r.json() == {"checkoutReferenceNumber": "CHK-20250101000000-ABCDEF", "status": "queued"}
    job = PaymentCallbackJob.objects.get()
    assert job.state == PaymentCallbackJob.State.QUEUED
    assert job.payment_reference_number == "PAY-123"


@pytest.mark.django_db
def test_payment_callback_rejects_unknown_status(client):
    payload = {
        "checkoutReferenceNumber": "CHK-20250101000000-ABCDEF",
        "status": "refunded",
        "paymentReferenceNumber": "PAY-123",
    }
    r = client.post(CALLBACK_URL, data=payload, content_type="application/json")
    assert r.status_code == 400
    assert PaymentCallbackJob.objects.count() == 0


@pytest.mark.django_db
def test_oversized_body_returns_413(client, monkeypatch):
    monkeypatch.setattr("gateway.middleware.MAX_API_BYTES", 10)
    r = client.post(CALLBACK_URL, data={"status": "x" * 64}, content_type="application/json")
    assert r.status_code == 413


@pytest.mark.django_db
def test_health_reports_dead_letters(client):
    r = client.get("/api/health/")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["components"]["payment_callbacks"]["dead_letters"] == 0


@pytest.mark.django_db
def test_key_still_in_flight_returns_409(client, cart):
    idempotency.claim("idem-busy", {"user_id": USER, "payment_method": "CASH"})

    r = post_checkout(client, {"payment_method": "CASH"}, HTTP_IDEMPOTENCY_KEY="idem-busy")

    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_IN_PROGRESS"


@pytest.mark.django_db
def test_cart_outage_returns_503_and_frees_key(client, settings, monkeypatch):
    import httpx

    settings.USE_HTTP_ADAPTERS = True

    def fake_request(self, method, url, headers=None, **kw):
        raise httpx.ConnectError("cart down")

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    cart_circuit.record_success()
    monkeypatch.setattr(cart_circuit, "fail_threshold", 1000)

    r = post_checkout(client, HTTP_IDEMPOTENCY_KEY="idem-down")

    assert r.status_code == 503
    assert r.json()["detail"] == "UPSTREAM_UNAVAILABLE"
    assert not IdempotencyKey.objects.filter(key="idem-down").exists()
    cart_circuit.record_success()


@pytest.mark.django_db
def test_unexpected_failure_frees_key_for_retry(client, make_book, add_to_cart, monkeypatch):
    add_to_cart(USER, make_book())

    class MalformedCart:
        def create_checkout(self, user_id, payment_method):
            raise KeyError("bookId")

    with monkeypatch.context() as m:
        m.setattr(providers, "get_checkout_service", lambda: MalformedCart())
        with pytest.raises(KeyError):
            post_checkout(client, HTTP_IDEMPOTENCY_KEY="idem-broken")

    assert not IdempotencyKey.objects.filter(key="idem-broken").exists()
    r = post_checkout(client, HTTP_IDEMPOTENCY_KEY="idem-broken")
    assert r.status_code == 201


@pytest.mark.django_db
@pytest.mark.parametrize("header", ["²", "0", "-3", "abc", "1.5"])
def test_malformed_user_header_returns_401(client, header):
    r = client.get(CHECKOUTS_URL, HTTP_X_USER_ID=header)
    assert r.status_code == 401
    assert r.json()["detail"] == "UNAUTHENTICATED"


@pytest.mark.django_db
def test_history_lines_show_current_book_details(client, make_book, add_to_cart):
    book = make_book(title="Persuasion", author="Jane Austen")
    add_to_cart(USER, book)
    ref = post_checkout(client).json()["reference_number"]

    r = client.get(f"{CHECKOUTS_URL}{ref}/", **AUTH)
    item = r.json()["items"][0]
    assert (item["title"], item["author"]) == ("Persuasion", "Jane Austen")

    listed = client.get(CHECKOUTS_URL, **AUTH).json()["results"][0]["items"][0]
    assert listed["title"] == "Persuasion"

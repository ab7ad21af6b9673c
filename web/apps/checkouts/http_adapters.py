"""HTTP adapter for the cart service.

``HttpCartClient`` implements ``CartPort`` over ``httpx``:

- every call carries the ``X-Request-ID`` of the inbound request (read from
  the ContextVar the gateway middleware sets), plus ``X-Circuit-State`` and
  ``X-Retry-Count`` for the cart service's own logs;
- transport errors and 5xx responses are retried with capped exponential
  backoff (``RetryPolicy``);
- a process-wide ``CircuitBreaker`` stops calling the cart service after
  repeated failures and lets a single probe through once the reset timeout
  has elapsed.

The cart service reports prices as decimal amounts; they are converted to
integer cents here so the domain compares prices exactly.
"""

import os
import sys
import threading
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import CartLine, CartPort, CartSnapshot, EmptyCart

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


def _is_test_mode() -> bool:
    return (
        "pytest" in sys.modules
        or os.environ.get("PYTEST_CURRENT_TEST") is not None
        or os.environ.get("PYTEST_RUNNING") == "1"
    )


# ---------------- Circuit Breaker ---------------- #

class CircuitOpen(RuntimeError):
    """Raised when a call is rejected by an open circuit."""


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Thread-safe circuit breaker guarding one downstream service.

    ``fail_threshold`` consecutive failures open the circuit. After
    ``reset_timeout`` seconds it turns HALF_OPEN and admits exactly one probe:
    success closes it, failure opens it again.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._mutex = threading.RLock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probing = False

    @property
    def state(self) -> CircuitState:
        with self._mutex:
            cooled_down = time.monotonic() - self._opened_at >= self.reset_timeout
            if self._state is CircuitState.OPEN and cooled_down:
                self._state = CircuitState.HALF_OPEN
                self._probing = False
            return self._state

    def acquire(self) -> CircuitState:
        """Admit a call or raise ``CircuitOpen``; returns the admitting state."""
        with self._mutex:
            current = self.state
            if current is CircuitState.OPEN:
                raise CircuitOpen(f"{self.name}: CIRCUIT_OPEN")
            if current is CircuitState.HALF_OPEN:
                if self._probing:
                    raise CircuitOpen(f"{self.name}: CIRCUIT_HALF_OPEN_BUSY")
                self._probing = True
            return current

    def record_success(self) -> None:
        with self._mutex:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._probing = False

    def record_failure(self) -> None:
        with self._mutex:
            self._consecutive_failures += 1
            if self._state is CircuitState.HALF_OPEN or (
                self._state is CircuitState.CLOSED and self._consecutive_failures >= self.fail_threshold
            ):
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()
                self._probing = False

    def release(self) -> None:
        """Free the HALF_OPEN probe slot when a call ends without a verdict."""
        with self._mutex:
            if self._state is CircuitState.HALF_OPEN:
                self._probing = False


cart_circuit = CircuitBreaker(
    "cart",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Retry policy ---------------- #

@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failing call is repeated.

    Attributes:
        retries: Extra attempts after the first one.
        backoff_base: Delay before the first retry, doubled on each retry.
        max_sleep: Upper bound for a single delay.
    """

    retries: int
    backoff_base: float
    max_sleep: float

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        policy = cls(
            retries=getattr(settings, "HTTP_RETRY_MAX", 2),
            backoff_base=getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
            max_sleep=getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
        )
        if _is_test_mode():
            # At least one retry, never sleep
            return cls(retries=max(policy.retries, 1), backoff_base=0.0, max_sleep=0.0)
        return policy

    def delay(self, retry: int) -> float:
        return min(self.backoff_base * (2 ** (retry - 1)), self.max_sleep)


def _is_transient(resp: Optional[httpx.Response]) -> bool:
    """A missing response (transport error) or a 5xx is worth retrying."""
    return resp is None or 500 <= resp.status_code < 600


def to_cents(amount) -> int:
    """Convert a decimal amount (number or string) to integer cents."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------------- Cart Adapter ---------------- #

class HttpCartClient(CartPort):
    """Cart service client.

    Args:
        base_url: Cart service root, defaults to ``settings.CART_BASE_URL``.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.CART_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def get_snapshot_for_checkout(self, user_id: int) -> CartSnapshot:
        """Fetch the buyer's cart.

        A 404 means the buyer has no cart and is not counted against the
        circuit.

        Raises:
            EmptyCart: The buyer has no cart lines.
            CircuitOpen: The cart circuit is open.
            httpx.RequestError: Transport failure after all retries.
            httpx.HTTPStatusError: Unexpected status.
        """
        resp = self._call("GET", f"/carts/{user_id}/checkout-snapshot", accept=(200, 404))
        if resp.status_code == 404:
            raise EmptyCart()
        lines = [self._parse_line(item) for item in resp.json().get("lines", [])]
        if not lines:
            raise EmptyCart()
        return CartSnapshot(user_id=user_id, lines=lines)

    def clear(self, user_id: int) -> None:
        self._call("DELETE", f"/carts/{user_id}/items", accept=(200, 204, 404))

    @staticmethod
    def _parse_line(item: dict) -> CartLine:
        return CartLine(
            book_id=int(item["bookId"]),
            title=item.get("title", ""),
            author=item.get("author", ""),
            unit_price_cents=to_cents(item["unitPrice"]),
            quantity=int(item["quantity"]),
        )

    def _headers(self, circuit_state: CircuitState) -> dict:
        headers = {"X-Circuit-State": circuit_state.value, "X-Retry-Count": "0"}
        rid = REQUEST_ID_CTX.get()
        if rid and rid != "-":
            headers["X-Request-ID"] = rid
        return headers

    def _call(self, method: str, path: str, accept: tuple) -> httpx.Response:
        policy = RetryPolicy.from_settings()
        headers = self._headers(cart_circuit.acquire())
        url = f"{self.base_url}{path}"

        try:
            with httpx.Client(timeout=self.timeout) as client:
                for retry in range(policy.retries + 1):
                    if retry:
                        headers["X-Retry-Count"] = str(retry)
                        time.sleep(policy.delay(retry))
                    resp, error = None, None
                    try:
                        resp = client.request(method, url, headers=headers)
                    except httpx.RequestError as e:
                        error = e
                    if resp is not None and resp.status_code in accept:
                        cart_circuit.record_success()
                        return resp
                    if not _is_transient(resp):
                        # A 4xx is a contract problem, not an outage
                        cart_circuit.record_success()
                        resp.raise_for_status()

                cart_circuit.record_failure()
                if error is not None:
                    raise error
                resp.raise_for_status()
                raise httpx.HTTPStatusError(f"{method} {url} -> {resp.status_code}", request=None, response=resp)
        finally:
            cart_circuit.release()

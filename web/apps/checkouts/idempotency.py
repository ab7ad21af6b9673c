"""``Idempotency-Key`` support for checkout creation.

The first request carrying a key claims it by inserting an
``IdempotencyKey`` row holding a fingerprint of the request. Its outcome is
stored on the row once known, and later requests with the same key and the
same fingerprint get that stored response back instead of running the
checkout again. Reusing a key for a different request is a conflict.

Outcomes worth retrying (lock contention, cart service outage) are not
stored: the claim is dropped so the client can retry under the same key.
"""

import hashlib
import json
from dataclasses import dataclass

from django.db import IntegrityError, transaction

from .models import IdempotencyKey

IN_FLIGHT = 0


class IdempotencyConflict(ValueError):
    """The key was already used with a different payload."""

    def __init__(self):
        super().__init__("IDEMPOTENCY_CONFLICT")


@dataclass
class Claim:
    record: IdempotencyKey
    replay: bool

    @property
    def in_flight(self) -> bool:
        """True while the request that first used the key has not finished."""
        return self.replay and self.record.response_status == IN_FLIGHT


def fingerprint(payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@transaction.atomic
def claim(key: str, payload: dict) -> Claim:
    """Claim ``key`` for this request, or find the earlier claim.

    Raises:
        IdempotencyConflict: The key was claimed for a different payload.
    """
    digest = fingerprint(payload)
    try:
        # Savepoint so a duplicate key leaves the outer transaction usable
        with transaction.atomic():
            record = IdempotencyKey.objects.create(key=key, request_hash=digest, response_status=IN_FLIGHT)
    except IntegrityError:
        record = IdempotencyKey.objects.select_for_update().get(key=key)
        if record.request_hash != digest:
            raise IdempotencyConflict()
        return Claim(record, replay=True)
    return Claim(record, replay=False)


def remember(record: IdempotencyKey, status_code: int, body: dict, checkout_id=None) -> None:
    """Store the response replayed for later requests with the same key."""
    record.response_status = status_code
    record.response_body = body
    record.checkout_id = checkout_id
    record.save(update_fields=["response_status", "response_body", "checkout"])


def forget(record: IdempotencyKey) -> None:
    """Drop an unfinished claim after a retryable failure."""
    IdempotencyKey.objects.filter(pk=record.pk, response_status=IN_FLIGHT).delete()

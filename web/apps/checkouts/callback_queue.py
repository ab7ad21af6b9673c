"""Durable, at-least-once queue for payment-gateway callbacks.

Callbacks are stored as ``PaymentCallbackJob`` rows in the same database as
the checkouts, so an accepted webhook survives process restarts. Workers
lease jobs with ``SELECT ... FOR UPDATE SKIP LOCKED``; a lease that expires
(crashed worker) makes the job claimable again, which is why consumers must
be idempotent.

Job lifecycle::

    QUEUED --claim--> PROCESSING --ack--> DONE
    PROCESSING --retry, attempts < max--> QUEUED (after backoff)
    PROCESSING --retry, attempts >= max--> DEAD
    PROCESSING --dead_letter--> DEAD --redrive--> QUEUED
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .domain import GatewayStatus, PaymentCallback
from .models import PaymentCallbackJob

logger = logging.getLogger("checkouts.queue")


def _policy():
    """Return (max_attempts, backoff_base_secs, max_backoff_secs, visibility_timeout_secs)."""
    return (
        getattr(settings, "PAYMENT_CALLBACK_MAX_ATTEMPTS", 5),
        getattr(settings, "PAYMENT_CALLBACK_BACKOFF_BASE", 2.0),
        getattr(settings, "PAYMENT_CALLBACK_MAX_BACKOFF", 300.0),
        getattr(settings, "PAYMENT_CALLBACK_VISIBILITY_TIMEOUT", 60.0),
    )


def to_message(job: PaymentCallbackJob) -> PaymentCallback:
    return PaymentCallback(
        checkout_reference_number=job.checkout_reference_number,
        status=GatewayStatus(job.status),
        payment_reference_number=job.payment_reference_number,
    )


def enqueue(message: PaymentCallback) -> PaymentCallbackJob:
    """Persist a callback for later delivery.

    Args:
        message: The gateway notification to deliver.

    Returns:
        PaymentCallbackJob: The stored job in QUEUED state.
    """
    job = PaymentCallbackJob.objects.create(
        checkout_reference_number=message.checkout_reference_number,
        status=GatewayStatus(message.status).value,
        payment_reference_number=message.payment_reference_number,
    )
    logger.info(
        "payment callback queued",
        extra={"job_id": job.pk, "reference_number": job.checkout_reference_number, "gateway_status": job.status},
    )
    return job


def claim_next(worker_id: str) -> Optional[PaymentCallbackJob]:
    """Lease the oldest deliverable job, or return None when the queue is idle.

    A job is deliverable when it is QUEUED and its ``available_at`` has
    passed, or when it is PROCESSING but its lease expired.
    """
    _, _, _, visibility = _policy()
    now = timezone.now()
    with transaction.atomic():
        job = (
            PaymentCallbackJob.objects.select_for_update(skip_locked=True)
            .filter(
                Q(state=PaymentCallbackJob.State.QUEUED, available_at__lte=now)
                | Q(state=PaymentCallbackJob.State.PROCESSING, leased_until__lte=now)
            )
            .order_by("available_at", "id")
            .first()
        )
        if job is None:
            return None
        if job.state == PaymentCallbackJob.State.PROCESSING:
            logger.warning(
                "lease expired, redelivering",
                extra={"job_id": job.pk, "previous_worker": job.locked_by},
            )
        job.state = PaymentCallbackJob.State.PROCESSING
        job.attempts += 1
        job.locked_by = worker_id
        job.leased_until = now + timedelta(seconds=visibility)
        job.save(update_fields=["state", "attempts", "locked_by", "leased_until", "updated_at"])
    return job


def _finish(job: PaymentCallbackJob, **fields) -> bool:
    # Only the current lease holder may settle the job
    fields.setdefault("leased_until", None)
    fields["updated_at"] = timezone.now()
    updated = PaymentCallbackJob.objects.filter(
        pk=job.pk, state=PaymentCallbackJob.State.PROCESSING, locked_by=job.locked_by
    ).update(**fields)
    for name, value in fields.items():
        setattr(job, name, value)
    return updated == 1


def ack(job: PaymentCallbackJob) -> bool:
    """Mark a job as delivered."""
    return _finish(job, state=PaymentCallbackJob.State.DONE, last_error="")


def retry(job: PaymentCallbackJob, error: str) -> bool:
    """Reschedule a failed job with exponential backoff, or dead-letter it.

    The delay is ``base * 2 ** (attempts - 1)`` seconds, capped at the
    configured maximum. Once ``attempts`` reaches the maximum the job is
    moved to DEAD.
    """
    max_attempts, base, cap, _ = _policy()
    if job.attempts >= max_attempts:
        logger.error(
            "payment callback exhausted retries",
            extra={"job_id": job.pk, "attempts": job.attempts, "error": error},
        )
        return _finish(job, state=PaymentCallbackJob.State.DEAD, last_error=error)
    delay = min(base * (2 ** (job.attempts - 1)), cap)
    return _finish(
        job,
        state=PaymentCallbackJob.State.QUEUED,
        last_error=error,
        available_at=timezone.now() + timedelta(seconds=delay),
    )


def dead_letter(job: PaymentCallbackJob, error: str) -> bool:
    """Move a job straight to DEAD; used for non-retryable failures."""
    return _finish(job, state=PaymentCallbackJob.State.DEAD, last_error=error)


def redrive(job_ids: Optional[Iterable[int]] = None) -> int:
    """Return DEAD jobs to the queue with a fresh attempt budget.

    Args:
        job_ids: Jobs to redrive; all DEAD jobs when omitted.

    Returns:
        int: Number of jobs requeued.
    """
    qs = PaymentCallbackJob.objects.filter(state=PaymentCallbackJob.State.DEAD)
    if job_ids is not None:
        qs = qs.filter(pk__in=list(job_ids))
    count = qs.update(
        state=PaymentCallbackJob.State.QUEUED,
        attempts=0,
        available_at=timezone.now(),
        locked_by="",
        leased_until=None,
        updated_at=timezone.now(),
    )
    logger.info("dead letters redriven", extra={"count": count})
    return count


def dead_letter_count() -> int:
    return PaymentCallbackJob.objects.filter(state=PaymentCallbackJob.State.DEAD).count()

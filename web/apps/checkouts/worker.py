"""Payment callback worker pool.

Each worker leases one job at a time from ``callback_queue``, hands the
message to ``PaymentReconciler`` and settles the job:

- success (including idempotent no-ops) → ack
- ``OrderNotFound`` → dead-letter, the callback can never be resolved
- anything else (``CheckoutConflict``, database errors) → retry with backoff

A storage error while claiming or settling a job does not stop the worker:
it backs off for one poll interval and tries again.

Workers run on plain threads; each thread owns its database connection and
closes it when it stops.
"""

import logging
import os
import socket
import threading
from typing import Callable, List, Optional

from django.conf import settings
from django.db import DatabaseError, connections

from . import callback_queue
from .domain import OrderNotFound, PaymentReconciler

logger = logging.getLogger("checkouts.worker")


def _default_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


class PaymentCallbackWorker:
    """Drains the payment callback queue.

    Args:
        reconciler: Reconciler applying callbacks to checkouts.
        worker_id: Lease owner name recorded on claimed jobs.
        poll_interval: Seconds to sleep when the queue is idle.
    """

    def __init__(self, reconciler: PaymentReconciler, worker_id: str | None = None, poll_interval: float | None = None):
        self.reconciler = reconciler
        self.worker_id = worker_id or _default_worker_id()
        self.poll_interval = poll_interval if poll_interval is not None else getattr(
            settings, "PAYMENT_WORKER_POLL_INTERVAL", 1.0
        )

    def run_once(self) -> bool:
        """Process at most one job.

        Returns:
            bool: True if a job was claimed, False when the queue was idle.
        """
        job = callback_queue.claim_next(self.worker_id)
        if job is None:
            return False

        log_extra = {
            "job_id": job.pk,
            "attempt": job.attempts,
            "reference_number": job.checkout_reference_number,
            "gateway_status": job.status,
        }
        try:
            result = self.reconciler.handle(callback_queue.to_message(job))
        except OrderNotFound as e:
            logger.error("callback for unknown checkout dead-lettered", extra=log_extra)
            callback_queue.dead_letter(job, str(e))
        except Exception as e:
            logger.warning("callback processing failed, will retry", extra=log_extra, exc_info=True)
            callback_queue.retry(job, f"{type(e).__name__}: {e}")
        else:
            callback_queue.ack(job)
            logger.info(
                "callback processed",
                extra={**log_extra, "payment_status": result.payment_status.value, "applied": result.applied},
            )
        return True

    def drain(self) -> int:
        """Process jobs until the queue is idle; return how many were claimed."""
        n = 0
        while self.run_once():
            n += 1
        return n

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("payment worker started", extra={"worker_id": self.worker_id})
        try:
            while not stop_event.is_set():
                try:
                    busy = self.run_once()
                except DatabaseError:
                    logger.warning("queue access failed", extra={"worker_id": self.worker_id}, exc_info=True)
                    connections.close_all()
                    busy = False
                if not busy:
                    stop_event.wait(self.poll_interval)
        finally:
            connections.close_all()
            logger.info("payment worker stopped", extra={"worker_id": self.worker_id})


def run_pool(
    make_reconciler: Callable[[], PaymentReconciler],
    workers: int,
    stop_event: threading.Event,
    poll_interval: Optional[float] = None,
) -> List[threading.Thread]:
    """Start ``workers`` worker threads and return them.

    The threads stop when ``stop_event`` is set; callers join them.
    """
    threads = []
    for i in range(workers):
        worker = PaymentCallbackWorker(make_reconciler(), worker_id=_default_worker_id(i), poll_interval=poll_interval)
        t = threading.Thread(target=worker.run_forever, args=(stop_event,), name=f"payment-worker-{i}", daemon=True)
        t.start()
        threads.append(t)
    return threads

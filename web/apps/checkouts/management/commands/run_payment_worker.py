import signal
import threading

from django.conf import settings
from django.core.management.base import BaseCommand

from apps.checkouts import callback_queue, providers
from apps.checkouts.worker import PaymentCallbackWorker, run_pool


class Command(BaseCommand):
    help = "Consume queued payment-gateway callbacks and reconcile them against checkouts."

    def add_arguments(self, parser):
        parser.add_argument(
            "--workers",
            type=int,
            default=getattr(settings, "PAYMENT_WORKER_CONCURRENCY", 2),
            help="Number of worker threads.",
        )
        parser.add_argument("--once", action="store_true", help="Drain the queue once and exit.")
        parser.add_argument("--redrive", action="store_true", help="Requeue dead-lettered callbacks and exit.")
        parser.add_argument("--poll-interval", type=float, default=None, help="Idle sleep in seconds.")

    def handle(self, *args, **options):
        if options["redrive"]:
            count = callback_queue.redrive()
            self.stdout.write(f"requeued {count} dead-lettered callback(s)")
            return

        if options["once"]:
            worker = PaymentCallbackWorker(providers.get_reconciler(), poll_interval=options["poll_interval"])
            processed = worker.drain()
            self.stdout.write(f"processed {processed} callback(s)")
            return

        stop = threading.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda *_: stop.set())

        threads = run_pool(providers.get_reconciler, options["workers"], stop, options["poll_interval"])
        self.stdout.write(f"started {len(threads)} payment worker(s)")
        while any(t.is_alive() for t in threads):
            for t in threads:
                t.join(timeout=1.0)

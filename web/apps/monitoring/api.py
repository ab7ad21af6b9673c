import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.checkouts import callback_queue

logger = logging.getLogger("checkouts")


def health_view(_request):
    """Liveness of the database plus the payment callback dead-letter backlog.

    Dead letters are reported, not judged: they need an operator but do not
    make the service unhealthy.
    """
    components = {"db": {"ok": True}, "payment_callbacks": {"dead_letters": None}}
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1")
        components["payment_callbacks"]["dead_letters"] = callback_queue.dead_letter_count()
    except DatabaseError:
        logger.exception("health check failed")
        components["db"]["ok"] = False

    healthy = components["db"]["ok"]
    return JsonResponse({"ok": healthy, "components": components}, status=200 if healthy else 503)

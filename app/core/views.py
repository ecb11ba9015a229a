"""
Infrastructure endpoints that sit outside the payment domain.
"""

import logging

from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Liveness/readiness probe for Docker, Kubernetes and load balancers.

    Database connectivity decides the HTTP status (200 or 503). The cache
    is reported but treated as degradable, since the cache backend is
    configured to ignore connection errors.

    Example Response:
        {"status": "healthy", "database": "connected", "cache": "connected"}
    """
    health_status = {"status": "healthy", "database": "connected", "cache": "connected"}

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError:
        logger.exception("Health check: database unreachable")
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"

    cache.set("health_check", "ok", timeout=1)
    if cache.get("health_check") != "ok":
        health_status["cache"] = "disconnected"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JsonResponse(health_status, status=status_code)

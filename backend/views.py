from rest_framework.decorators import api_view
from rest_framework.response import Response
from django.http import JsonResponse
from django.db import connection
import sys


@api_view(["GET"])
def api_root(request, format=None):
    return Response(
        {
            "endpoints": {
                "queue": request.build_absolute_uri("/api/v1/queue/"),
                "queue_health": request.build_absolute_uri("/api/v1/queue/health/"),
                "schema": request.build_absolute_uri("/api/schema/"),
                "docs": request.build_absolute_uri("/api/docs/"),
            },
            "websocket": "/ws/queue/position/<appointment_id>/",
        }
    )


def health_check(request):
    health_status = {
        "status": "healthy",
        "python_version": sys.version,
    }

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            health_status["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = f"error: {str(e)}"
        return JsonResponse(health_status, status=503)

    return JsonResponse(health_status)

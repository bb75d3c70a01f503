from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.storefront.http_adapters import provider_cb


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    # An open circuit degrades checkout but not browsing, so it does not fail the probe
    circuit = provider_cb.state
    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "payments": {"ok": circuit == "CLOSED", "circuit": circuit},
            },
        },
        status=code,
    )

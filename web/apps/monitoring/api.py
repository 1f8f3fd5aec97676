from django.http import JsonResponse
from django.db import DatabaseError, connection

from apps.orders.http_adapters import circuit_states


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    breakers = circuit_states()
    ok = db_ok
    code = 200 if ok else 503
    return JsonResponse(
        {
            "ok": ok,
            "components": {
                "db": {"ok": db_ok},
                "inventory": {"circuit": breakers["inventory"]},
                "coupons": {"circuit": breakers["coupons"]},
            },
        },
        status=code,
    )

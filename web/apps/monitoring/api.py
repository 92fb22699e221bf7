from django.conf import settings
from django.core.cache import caches
from django.db import connection
from django.http import JsonResponse


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception:
        db_ok = False

    cache_ok = False
    try:
        dedup = caches[settings.WEBHOOK_DEDUP_CACHE]
        dedup.set("health:probe", "1", timeout=5)
        cache_ok = dedup.get("health:probe") == "1"
    except Exception:
        cache_ok = False

    ok = db_ok and cache_ok
    code = 200 if ok else 503
    return JsonResponse(
        {"ok": ok, "components": {"db": {"ok": db_ok}, "webhook_dedup": {"ok": cache_ok}}},
        status=code,
    )

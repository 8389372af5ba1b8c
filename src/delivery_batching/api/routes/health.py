"""Health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, status

from ...config import settings

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_root() -> dict:
    """Simple health check endpoint that doesn't require any dependencies."""
    return {"status": "ok"}


def _get_osrm_health_check():
    """Lazy import to avoid startup failures."""
    from ...services.routing.osrm_client import check_health as osrm_health_check
    return osrm_health_check


@router.get("/health/osrm", status_code=status.HTTP_200_OK)
def health_osrm() -> dict:
    """Check OSRM service health. Batches fall back to haversine distances when unhealthy."""
    if not settings.osrm_base_url:
        return {"service": "osrm", "configured": False, "healthy": False, "fallback": "geographic_fallback"}
    try:
        osrm_health_check = _get_osrm_health_check()
        status_flag = osrm_health_check()
        return {"service": "osrm", "configured": True, "healthy": status_flag}
    except Exception as e:
        return {"service": "osrm", "configured": True, "healthy": False, "error": str(e)}


@router.get("/health/database", status_code=status.HTTP_200_OK)
def check_database() -> dict:
    """Check database connection for batch storage."""
    from ...db.supabase import get_supabase_client
    from ...persistence.batch_store import SupabaseBatchStore

    supabase = get_supabase_client()
    if not supabase:
        return {
            "configured": False,
            "message": "Supabase not configured. Set BATCH_SUPABASE_URL and BATCH_SUPABASE_KEY environment variables.",
        }

    connected = SupabaseBatchStore(supabase).check_health()
    return {
        "configured": True,
        "connected": connected,
        "message": "Database connected." if connected else "Database connection error; see server logs.",
    }

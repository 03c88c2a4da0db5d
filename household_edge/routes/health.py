"""Health check endpoint."""
from fastapi import APIRouter, Depends

from household_edge.config import APP_VERSION
from household_edge.services import EdgeServices, get_services

router = APIRouter()


@router.get("/health")
def health(services: EdgeServices = Depends(get_services)):
    checks = {"app": "ok"}
    data_dir = services.history.base_dir

    # Check data directory is writable
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        test_file = data_dir / ".health_check"
        test_file.write_text("ok")
        test_file.unlink()
        checks["storage"] = "ok"
    except OSError as e:
        checks["storage"] = f"error: {e}"
        return {"status": "unhealthy", "checks": checks, "version": APP_VERSION}

    # A down store degrades rate limiting to each limit's fail-open/closed rule.
    checks["store"] = "ok" if services.store.ping() else "unavailable"
    status = "ok" if checks["store"] == "ok" else "degraded"
    return {"status": status, "checks": checks, "version": APP_VERSION}

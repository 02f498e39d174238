"""Health check endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bizdesk.api.deps import Clock
from bizdesk.config import get_settings
from bizdesk.db.session import get_db_session
from bizdesk.services.stores import SqlRuleStore

router = APIRouter()
settings = get_settings()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check(
    now: Clock,
    db: AsyncSession = Depends(get_db_session),
) -> dict:
    """Readiness check: database connectivity and the generation backlog.

    A backlog larger than one batch means the beat job is falling behind.
    """
    checks: dict[str, str] = {}
    backlog: int | None = None

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    if checks["database"] == "healthy":
        try:
            backlog = await SqlRuleStore(db).count_due_rules(now)
            checks["generation"] = (
                "healthy" if backlog <= settings.generation_batch_limit else "lagging"
            )
        except Exception as e:
            checks["generation"] = f"unhealthy: {str(e)}"

    overall_status = "healthy" if all(v == "healthy" for v in checks.values()) else "unhealthy"

    return {
        "status": overall_status,
        "version": settings.app_version,
        "checks": checks,
        "ready_for_generation_count": backlog,
    }

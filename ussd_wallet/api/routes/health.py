"""
Health check endpoints for monitoring and deployment.

Liveness never touches dependencies. Readiness requires the database and
Redis; SMS, providers and the reconciliation backlog are reported for
operators but do not take the instance out of rotation.
"""

import time
from datetime import datetime
from typing import Callable

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text

from ussd_wallet import __version__
from ussd_wallet.api.deps import Container, DbSession
from ussd_wallet.logging_config import get_logger
from ussd_wallet.storage import ledger

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

# Reported as "attention" once this many transactions await manual reconciliation
RECONCILIATION_BACKLOG_WARNING = 10


class HealthStatus(BaseModel):
    """Health check response model."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    checks: dict[str, bool]


class ReadinessStatus(BaseModel):
    """Readiness check response model."""
    ready: bool
    checks: dict[str, dict]


def _timed_check(name: str, check: Callable[[], object]) -> dict:
    """Run a dependency check and time it."""
    started = time.perf_counter()
    try:
        check()
    except Exception as e:
        logger.error("health_check_failed", dependency=name, error=str(e))
        return {"status": "error", "error": str(e)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 2)}


@router.get("", response_model=HealthStatus)
@router.get("/", response_model=HealthStatus)
def health_check(container: Container) -> HealthStatus:
    """Alive check for load balancers; no dependencies are contacted."""
    return HealthStatus(
        status="healthy",
        timestamp=datetime.utcnow(),
        version=__version__,
        environment=container.settings.environment,
        checks={"app": True},
    )


@router.get("/ready", response_model=ReadinessStatus)
def readiness_check(container: Container, db: DbSession) -> ReadinessStatus:
    """Readiness check with dependency verification."""
    checks: dict[str, dict] = {
        "database": _timed_check("database", lambda: db.execute(text("SELECT 1"))),
        "redis": _timed_check("redis", container.redis.ping),
    }
    ready = all(check["status"] == "ok" for check in checks.values())

    sms_configured = container.sms.is_configured
    checks["sms"] = {
        "status": "ok" if sms_configured else "not_configured",
        "configured": sms_configured,
    }
    checks["providers"] = {
        "status": "ok",
        "registered": container.providers.names(),
    }

    if checks["database"]["status"] == "ok":
        flagged = len(
            ledger.list_needing_reconciliation(db, limit=RECONCILIATION_BACKLOG_WARNING)
        )
        checks["reconciliation"] = {
            "status": "attention" if flagged >= RECONCILIATION_BACKLOG_WARNING else "ok",
            "flagged": flagged,
        }

    return ReadinessStatus(ready=ready, checks=checks)


@router.get("/live")
def liveness_check() -> dict:
    """Liveness check: 200 while the process is running."""
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}

from __future__ import annotations

from fastapi import FastAPI, HTTPException

from pagegate.api.routers import access, identity, matrix
from pagegate.infra.audit import AuditMiddleware
from pagegate.infra.db import check_db_ready
from pagegate.infra.logging_config import configure_logging
from pagegate.infra.redis_state import check_redis_ready

configure_logging()

app = FastAPI(
    title="pagegate",
    description="Page-level access control: permission resolution and role x page matrix administration.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(access.router, prefix="/api/access", tags=["access"])
app.include_router(matrix.router, prefix="/api/matrix", tags=["matrix"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}

"""Health check route (no authentication)."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dukabill.database.session import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db: Session = Depends(get_db_session)):
    """Liveness plus database reachability."""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("Health check database query failed", extra={"error": str(e)})
        database = "unavailable"
    return {"status": "ok" if database == "ok" else "degraded", "database": database}

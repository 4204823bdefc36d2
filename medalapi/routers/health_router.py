import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medalapi.database.session import get_db
from medalapi.schemas.health import HealthCheckResponse
from medalapi.utils.timezone_utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
def health_check(db: Session = Depends(get_db)) -> HealthCheckResponse:
    """Health check endpoint."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database ping failed: {str(e)}")
        return HealthCheckResponse(
            status="degraded",
            database_connected=False,
            checked_at=utcnow(),
            error=str(e),
        )

    return HealthCheckResponse(checked_at=utcnow())

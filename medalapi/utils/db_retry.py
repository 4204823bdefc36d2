import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from medalapi.core.exceptions import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 연결 끊김, 락 타임아웃 등 재시도로 해결될 수 있는 인프라 오류
TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError)


def retry_once(db: Session, operation: str, fn: Callable[[], T]) -> T:
    """
    멱등한 작업(조회, 유니크 제약으로 보호되는 삽입)을 일시적 DB 오류 시 한 번 재시도

    두 번째 시도도 실패하면 TransientStorageError를 발생시킵니다.
    멱등하지 않은 작업에는 사용하지 않습니다.
    """
    try:
        return fn()
    except TRANSIENT_DB_ERRORS as e:
        logger.warning(f"Transient storage error during {operation}, retrying once: {e}")
        db.rollback()

    try:
        return fn()
    except TRANSIENT_DB_ERRORS as e:
        db.rollback()
        logger.error(f"Storage unavailable during {operation}: {e}")
        raise TransientStorageError(
            f"Storage temporarily unavailable during {operation}"
        ) from e

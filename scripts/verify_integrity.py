"""
메달 원장 정합성 검증 배치

사용법:
    python scripts/verify_integrity.py            # 전체 검증
    python scripts/verify_integrity.py --user 42  # 특정 사용자만

불일치가 있으면 종료 코드 1로 끝나며, 복구는 관리자 API
(POST /api/v1/medals/admin/reconcile)로만 수행합니다.
"""

import argparse
import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from medalapi.config import settings
from medalapi.containers import Container
from medalapi.core.exceptions import IntegrityViolationError
from medalapi.logging_config import setup_logging

logger = logging.getLogger("medalapi.scripts.verify_integrity")


def run(user_id=None) -> int:
    container = Container()
    container.init_resources()
    try:
        medal_service = container.services.medal_service()
        report = medal_service.run_integrity_job(user_id)
        logger.info(f"Ledger integrity OK: {report.checked} balance(s) verified")
        return 0
    except IntegrityViolationError as e:
        logger.error(f"{e.message}: {e.details}")
        return 1
    finally:
        container.shutdown_resources()


def main():
    parser = argparse.ArgumentParser(description="Verify medal ledger integrity")
    parser.add_argument("--user", type=int, default=None, help="verify a single user")
    args = parser.parse_args()

    setup_logging(settings.LOG_LEVEL)
    sys.exit(run(args.user))


if __name__ == "__main__":
    main()

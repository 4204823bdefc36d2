"""
타임존 유틸리티

DB에는 UTC로 저장하고, 일일 교환 제한의 "하루"는 설정된 비즈니스 타임존
(기본 JST) 기준으로 계산합니다.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple

from medalapi.config import settings


def business_tz() -> timezone:
    return timezone(timedelta(hours=settings.BUSINESS_TIMEZONE_OFFSET_HOURS))


def utcnow() -> datetime:
    """현재 UTC 시간 (timezone-aware)"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """naive datetime은 UTC로 간주 (sqlite는 tzinfo 없이 반환)"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def business_date(dt: Optional[datetime] = None) -> date:
    """비즈니스 타임존 기준 날짜"""
    dt = ensure_utc(dt) if dt is not None else utcnow()
    return dt.astimezone(business_tz()).date()


def business_day_bounds(dt: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """비즈니스 타임존 기준 하루의 [시작, 끝) 구간을 UTC로 반환"""
    day = business_date(dt)
    start_local = datetime(day.year, day.month, day.day, tzinfo=business_tz())
    start_utc = start_local.astimezone(timezone.utc)
    return start_utc, start_utc + timedelta(days=1)

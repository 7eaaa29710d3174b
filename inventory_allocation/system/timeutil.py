# 📄 inventory_allocation/system/timeutil.py
# 목적: 시각 계산 공통 유틸
# 규칙: DB 에는 naive UTC 로 저장한다. 한국시간(KST, UTC+9)은 화면/업무 기준 계산에만 사용.

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple

KST_OFFSET = timedelta(hours=9)


def utc_now() -> datetime:
    """naive UTC 현재시각 (DB 저장용)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def kst_today() -> date:
    return (utc_now() + KST_OFFSET).date()


def business_day_window(day: date, cutoff_hour: int) -> Tuple[datetime, datetime]:
    """
    영업일 주문 범위를 naive UTC [start, end) 로 반환한다.

    cutoff_hour=15 이면 (전날 15:00 KST) ~ (당일 14:59:59 KST).
    예) 2025-03-10 → [2025-03-09 06:00 UTC, 2025-03-10 06:00 UTC)
    """
    if not 0 <= cutoff_hour <= 23:
        raise ValueError(f"cutoff_hour 범위 오류: {cutoff_hour}")

    end_kst = datetime.combine(day, time(hour=cutoff_hour))
    start_kst = end_kst - timedelta(days=1)
    return start_kst - KST_OFFSET, end_kst - KST_OFFSET

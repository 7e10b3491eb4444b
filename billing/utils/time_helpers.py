# donation_billing/billing/utils/time_helpers.py
"""
Единые функции для работы со временем.
Внутри движка все метки времени — aware UTC.
При хранении в БД (MySQL DATETIME / SQLite не хранят timezone) пишем UTC,
при чтении naive datetime из БД считаем UTC.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

UTC = timezone.utc

_INTERVALS = {
    "day": relativedelta(days=1),
    "week": relativedelta(weeks=1),
    "month": relativedelta(months=1),
    "year": relativedelta(years=1),
}


def now_utc() -> datetime:
    """Текущее время (aware UTC)."""
    return datetime.now(UTC)


def to_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Нормализует datetime к aware UTC.
    Если dt naive — предполагается, что это UTC (из БД).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_utc_for_db(dt: datetime) -> datetime:
    """Конвертирует datetime в UTC для сохранения в БД."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def from_db_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetime из БД (хранится как UTC) -> aware UTC."""
    return to_aware_utc(dt)


def add_interval(dt: datetime, interval: str, count: int = 1) -> datetime:
    """
    Сдвигает дату на count биллинговых интервалов.
    Месяцы считаются календарно: 31 янв + 1 month = 28/29 фев.
    """
    try:
        step = _INTERVALS[interval]
    except KeyError:
        raise ValueError(f"Unsupported billing interval: {interval!r}") from None
    return dt + step * count


def cycle_stamp(dt: datetime) -> str:
    """Компактная UTC-метка цикла для ключей идемпотентности: 20261019T000000Z."""
    return to_aware_utc(dt).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def iso_str(dt: Optional[datetime]) -> str:
    if dt is None:
        return "—"
    return to_aware_utc(dt).isoformat()


def parse_cycle_stamp(stamp: str) -> datetime:
    """Обратное к cycle_stamp: "20261019T000000Z" -> aware UTC."""
    try:
        return datetime.strptime(stamp, "%Y%m%dT%H%M%SZ").replace(tzinfo=UTC)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid cycle stamp: {stamp!r}") from None

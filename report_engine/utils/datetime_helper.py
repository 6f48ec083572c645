"""
日期时间辅助工具
数据库中的时间一律按 naive UTC 保存，对外输出时统一加上时区标识
"""
from datetime import datetime, timezone
from typing import Optional

DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"


def _as_utc(dt: datetime) -> datetime:
    # naive 时间视为 UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """
    转换为带 'Z' 后缀的 ISO 8601 字符串（去掉微秒）

    Examples:
        >>> to_iso_string(datetime(2026, 10, 19, 8, 0, 1, 500))
        '2026-10-19T08:00:01Z'
    """
    if dt is None:
        return None
    return _as_utc(dt).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


def to_display_string(dt: Optional[datetime]) -> str:
    """导出文件中显示的时间（UTC），None 返回空字符串"""
    if dt is None:
        return ""
    return f"{_as_utc(dt).strftime(DISPLAY_FORMAT)} UTC"

"""
转换器公共工具
金额容错转换、时间解析与派生字段、费用按类型拆分、状态过滤、嵌套取值
"""

import json
import math
from datetime import datetime
from typing import Annotated, Any, Dict, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, BeforeValidator, ConfigDict

# 上游平台均为印度业务，时间按当地时区解析
SOURCE_TZ = ZoneInfo("Asia/Kolkata")

_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_STRIP_CHARS = (",", "₹", " ", "\u00a0")


def coerce_amount(value: Any) -> float:
    """
    金额容错转换：数字直接返回，字符串去掉千分位 / 货币符号后解析，
    其余情况（None、布尔、无法解析、NaN / inf）一律返回 0.0
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value
        for ch in _STRIP_CHARS:
            cleaned = cleaned.replace(ch, "")
        try:
            number = float(cleaned)
        except ValueError:
            return 0.0
    else:
        return 0.0
    return number if math.isfinite(number) else 0.0


def coerce_int(value: Any) -> Optional[int]:
    """整数容错转换，无法解析返回 None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.replace(",", "").strip())
        except ValueError:
            return None
        return int(number) if math.isfinite(number) else None
    return None


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


# 原始数据字段类型：解析阶段即完成容错转换
Amount = Annotated[float, BeforeValidator(coerce_amount)]
Text = Annotated[str, BeforeValidator(coerce_text)]


class RawModel(BaseModel):
    """原始数据模型基类：保留未声明字段，不修改输入"""

    model_config = ConfigDict(extra="allow")


# ── 时间 ─────────────────────────────────────────────────

def parse_local_time(text: str) -> datetime:
    """解析 'YYYY-MM-DD HH:MM:SS' 或 ISO 字符串，无时区时按来源时区处理"""
    value = text.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=SOURCE_TZ)
    try:
        return parsed.astimezone(SOURCE_TZ)
    except OverflowError as exc:
        raise ValueError(f"时间超出可表示范围: {text!r}") from exc


def from_epoch(value: Any) -> datetime:
    """毫秒时间戳转换为来源时区时间；小于 1e11 的数值按秒处理"""
    number = coerce_amount(value)
    if number <= 0:
        raise ValueError(f"无效时间戳: {value!r}")
    if number >= 1e11:
        number /= 1000.0
    try:
        return datetime.fromtimestamp(number, tz=SOURCE_TZ)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"时间戳超出可表示范围: {value!r}") from exc


def derive_temporal(ts: datetime) -> Dict[str, Any]:
    return {
        "timestamp": ts,
        "year": ts.year,
        "month": ts.month,
        "month_key": f"{ts.year:04d}-{ts.month:02d}",
        "weekday": _WEEKDAYS[ts.weekday()],
        "hour_of_day": ts.hour,
    }


# ── 费用拆分 ─────────────────────────────────────────────

def decompose_charges(
    pairs: Optional[Iterable[Any]],
    buckets: Mapping[str, frozenset],
) -> Dict[str, float]:
    """
    将 [{type, value}, ...] 按类型标签归入各费用桶

    标签比较忽略大小写与首尾空格；未登记的类型不计入任何桶。
    """
    result = {bucket: 0.0 for bucket in buckets}
    for pair in pairs or ():
        if not isinstance(pair, Mapping):
            continue
        tag = coerce_text(pair.get("type")).upper()
        for bucket, tags in buckets.items():
            if tag in tags:
                result[bucket] += coerce_amount(pair.get("value"))
                break
    return result


def named_charges(charges: Any) -> list:
    """
    {'Delivery Charges': '30.00', ...} → [{type, value}, ...]

    已是 [{type, value}] 列表时原样返回，其余类型视为无费用
    """
    if isinstance(charges, list):
        return charges
    if not isinstance(charges, Mapping):
        return []
    return [{"type": name, "value": value} for name, value in charges.items()]


def itemize_discounts(pairs: Optional[Iterable[Any]]) -> Dict[str, float]:
    """[{type, value}] → {type: 累计金额}，零值条目省略"""
    result: Dict[str, float] = {}
    for pair in pairs or ():
        if not isinstance(pair, Mapping):
            continue
        amount = coerce_amount(pair.get("value"))
        if amount:
            tag = coerce_text(pair.get("type")) or "other"
            result[tag] = result.get(tag, 0.0) + amount
    return result


# ── 状态 / 嵌套结构 ───────────────────────────────────────

def is_completed(status: Any, accepted: frozenset, allow_missing: bool = False) -> bool:
    text = coerce_text(status)
    if not text:
        return allow_missing
    return text.upper() in accepted


def dig(data: Any, *path: Any) -> Any:
    """按键 / 下标逐层取值，任一层缺失返回 None"""
    current = data
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, Mapping):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
        if current is None:
            return None
    return current


def parse_metadata(value: Any) -> Optional[dict]:
    """订单任务 metadata 可能是 JSON 字符串或已解析对象"""
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def unique(values: Iterable[str]) -> tuple:
    """去重并保持首次出现顺序，忽略空值"""
    seen: Dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return tuple(seen)

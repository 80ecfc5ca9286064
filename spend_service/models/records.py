"""
规范化数据模型
  CanonicalRecord  : 单条订单 / 消费事件，与来源平台无关
  AggregateDataset : 由一批记录计算出的汇总数据集
  CacheEntry       : 数据集缓存管理器内部的整条缓存项
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Dict, Optional, Tuple

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator


class FrozenDict(dict):
    """只读字典：序列化与比较行为同 dict，任何原地修改都抛 TypeError"""

    def _readonly(self, *args, **kwargs):
        raise TypeError(f"{type(self).__name__} 不可修改")

    __setitem__ = __delitem__ = __ior__ = _readonly
    clear = pop = popitem = setdefault = update = _readonly

    def __reduce__(self):
        return type(self), (dict(self),)


def freeze(value: Any) -> Any:
    """递归地将 dict / list 转为 FrozenDict / tuple"""
    if isinstance(value, dict):
        return value if isinstance(value, FrozenDict) else FrozenDict(
            (key, freeze(item)) for key, item in value.items()
        )
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


FrozenAmounts = Annotated[Dict[str, float], AfterValidator(freeze)]


class ImmutableModel(BaseModel):
    """冻结模型基类：扩展字段中的 dict / list 在校验后同样只读"""

    model_config = ConfigDict(frozen=True, extra="allow")

    @model_validator(mode="after")
    def freeze_extras(self):
        extra = self.__pydantic_extra__
        if extra:
            for key, value in extra.items():
                extra[key] = freeze(value)
        return self


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class LineItem(ImmutableModel):
    """订单明细行，来源可附带额外字段"""

    name: str = ""
    quantity: float = 0.0
    price: float = 0.0


class CanonicalRecord(ImmutableModel):
    """
    规范化订单记录

    时间派生字段（year / month / month_key / weekday / hour_of_day）
    只在转换时计算一次。记录创建后不可变，重新导入时整体替换。
    允许来源附加规范字段之外的扩展字段，discounts 与扩展字段中的 dict / list
    均为只读结构。
    """

    id: str
    source_id: str
    timestamp: datetime

    year: int
    month: int
    month_key: str
    weekday: str
    hour_of_day: int

    gross_amount: float = 0.0
    net_amount: float = 0.0
    fees_total: float = 0.0
    tip_amount: float = 0.0

    counterparty_name: str = ""
    counterparty_tags: Tuple[str, ...] = ()
    counterparty_city: str = ""
    counterparty_area: str = ""

    discounts: FrozenAmounts = Field(default_factory=FrozenDict)
    payment_method: str = "Unknown"
    counterparty_location: Optional[GeoPoint] = None
    delivery_location: Optional[GeoPoint] = None
    line_items: Optional[Tuple[LineItem, ...]] = None
    party_size: Optional[int] = None


class TimeSpan(BaseModel):
    model_config = ConfigDict(frozen=True)

    earliest: datetime
    latest: datetime


class AggregateDataset(BaseModel):
    """汇总数据集：记录为空时 average_amount 为 0，time_span 为空"""

    model_config = ConfigDict(frozen=True)

    records: Tuple[CanonicalRecord, ...] = ()
    record_count: int = 0
    total_amount: float = 0.0
    average_amount: float = 0.0
    total_tips: float = 0.0
    total_fees: float = 0.0
    distinct_counterparties: int = 0
    distinct_areas: int = 0
    time_span: Optional[TimeSpan] = None


@dataclass(frozen=True)
class CacheEntry:
    records: Tuple[CanonicalRecord, ...]
    aggregate: AggregateDataset

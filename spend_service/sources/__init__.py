"""
数据来源注册表
进程启动后不可变；新增上游格式只需新增一条定义
"""

from types import MappingProxyType
from typing import Mapping, Optional

from spend_service.sources import dineout, instamart, swiggy
from spend_service.sources.base import ImportMethod, SourceDefinition, SourceId

_CAPTURE_AND_FILE = frozenset({ImportMethod.CAPTURE_AGENT, ImportMethod.MANUAL_FILE})

SOURCES: Mapping[str, SourceDefinition] = MappingProxyType({
    SourceId.SWIGGY.value: SourceDefinition(
        id=SourceId.SWIGGY,
        name="Swiggy",
        description="Swiggy 外卖订单",
        transformer=swiggy.transform,
        capture_store_key="swiggy_raw_data",
        import_methods=_CAPTURE_AND_FILE,
        required_fields=("order_id", "order_time"),
    ),
    SourceId.INSTAMART.value: SourceDefinition(
        id=SourceId.INSTAMART,
        name="Instamart",
        description="Swiggy Instamart 即时生鲜订单",
        transformer=instamart.transform,
        capture_store_key="swiggy_instamart_raw_data",
        import_methods=_CAPTURE_AND_FILE,
        required_fields=("order_id", "created_at"),
    ),
    SourceId.DINEOUT.value: SourceDefinition(
        id=SourceId.DINEOUT,
        name="Dineout",
        description="Swiggy Dineout 餐厅预订与到店支付",
        transformer=dineout.transform,
        capture_store_key="swiggy_dineout_raw_data",
        import_methods=_CAPTURE_AND_FILE,
        required_fields=("order_id", "created_at"),
    ),
})


def get_source(source_id: str) -> Optional[SourceDefinition]:
    return SOURCES.get(getattr(source_id, "value", source_id))

"""
持久化缓存编解码
依据模型字段声明还原时间字段（timestamp / time_span），不依赖字段名匹配
"""

from typing import Any, Dict, Iterable, List, Sequence

from pydantic import TypeAdapter

from spend_service.models.records import AggregateDataset, CanonicalRecord

_RECORD_LIST = TypeAdapter(List[CanonicalRecord])


def encode_records(records: Iterable[CanonicalRecord]) -> List[Dict[str, Any]]:
    return [record.model_dump(mode="json") for record in records]


def decode_records(blob: Any) -> List[CanonicalRecord]:
    """解码失败抛出 pydantic.ValidationError"""
    return _RECORD_LIST.validate_python(blob)


def encode_aggregate(aggregate: AggregateDataset) -> Dict[str, Any]:
    """汇总数据不重复存储记录，记录单独保存在 records 子键"""
    return aggregate.model_dump(mode="json", exclude={"records"})


def decode_aggregate(blob: Any, records: Sequence[CanonicalRecord]) -> AggregateDataset:
    if not isinstance(blob, dict):
        raise TypeError(f"aggregate 数据应为对象，实际为 {type(blob).__name__}")
    return AggregateDataset.model_validate({**blob, "records": tuple(records)})


def records_differ(
    current: Sequence[CanonicalRecord], fresh: Sequence[CanonicalRecord]
) -> bool:
    """按长度及序列化内容比较两批记录"""
    if len(current) != len(fresh):
        return True
    return encode_records(current) != encode_records(fresh)

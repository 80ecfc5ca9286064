"""
数据来源定义
每个来源提供：转换器、可选汇总器、支持的导入方式、采集存储键
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, FrozenSet, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel

from spend_service.errors import MalformedPayloadError, StructuralValidationError
from spend_service.layers.processing import build_aggregate
from spend_service.models.records import AggregateDataset, CacheEntry, CanonicalRecord

logger = logging.getLogger(__name__)


class SourceId(str, Enum):
    SWIGGY = "swiggy"
    INSTAMART = "swiggy-instamart"
    DINEOUT = "swiggy-dineout"


class ImportMethod(str, Enum):
    CAPTURE_AGENT = "capture-agent"
    MANUAL_FILE = "manual-file"
    API = "api"


Transformer = Callable[[Any], List[CanonicalRecord]]
Aggregator = Callable[[Sequence[CanonicalRecord]], AggregateDataset]


@dataclass(frozen=True)
class SourceDefinition:
    id: SourceId
    name: str
    description: str
    transformer: Transformer
    capture_store_key: str
    import_methods: FrozenSet[ImportMethod]
    required_fields: Tuple[str, ...] = ()
    aggregator: Optional[Aggregator] = None

    def supports(self, method: ImportMethod) -> bool:
        return method in self.import_methods

    def aggregate(self, records: Sequence[CanonicalRecord]) -> AggregateDataset:
        return (self.aggregator or build_aggregate)(records)

    def build_entry(self, raw: Any) -> CacheEntry:
        """原始数据 → 转换 → 汇总"""
        records = tuple(self.transformer(raw))
        return CacheEntry(records=records, aggregate=self.aggregate(records))

    def validate_payload(self, raw: Any) -> list:
        """
        导入前的结构校验

        - 字符串 / 字节先按 JSON 解析，失败抛 MalformedPayloadError
        - 顶层必须是数组
        - 首个元素必须是对象且包含 required_fields，否则抛 StructuralValidationError

        返回解析后的数组，输入本身不被修改。
        """
        payload = raw
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError as exc:
                raise MalformedPayloadError(f"{self.name} 导入数据不是合法 JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise MalformedPayloadError(
                f"{self.name} 导入数据应为数组，实际为 {type(payload).__name__}"
            )
        if not payload:
            return payload

        first = payload[0]
        if not isinstance(first, dict):
            raise StructuralValidationError(
                f"{self.name} 导入数据的元素应为对象，实际为 {type(first).__name__}"
            )
        missing = [f for f in self.required_fields if first.get(f) in (None, "")]
        if missing:
            raise StructuralValidationError(
                f"{self.name} 导入数据缺少必需字段: {', '.join(missing)}", missing=missing
            )
        return payload


def transform_elements(
    raw: Any,
    schema: Type[BaseModel],
    convert: Callable[[Any], Optional[CanonicalRecord]],
    source: SourceId,
) -> List[CanonicalRecord]:
    """
    逐元素转换：单个元素校验或转换失败时跳过并继续

    convert 返回 None 表示该元素被状态过滤掉。
    顶层不是数组时抛 MalformedPayloadError。
    """
    if not isinstance(raw, list):
        raise MalformedPayloadError(
            f"{source.value} 原始数据应为数组，实际为 {type(raw).__name__}"
        )

    records: List[CanonicalRecord] = []
    skipped = 0
    for index, element in enumerate(raw):
        try:
            record = convert(schema.model_validate(element))
        except (ValueError, TypeError, KeyError, OverflowError) as exc:
            skipped += 1
            logger.debug(f"{source.value} 第 {index} 条数据无法转换，已跳过: {exc}")
            continue
        if record is not None:
            records.append(record)

    if skipped:
        logger.info(f"{source.value} 转换完成：{len(records)} 条有效，{skipped} 条异常已跳过")
    return records

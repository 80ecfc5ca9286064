"""
两级存储适配器
按顺序尝试各层提供者，首个命中即返回：
  1. 采集存储原始数据 → 转换 → 汇总（需回写持久化缓存）
  2. 持久化缓存 records + aggregate（已处理，直接还原）
  3. 持久化缓存 raw → 转换 → 汇总（需回写持久化缓存）
新增一层只需在提供者列表中插入一项
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from spend_service.errors import DurableCacheWriteError
from spend_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from spend_service.layers.cache import AGGREGATE, RAW, RECORDS, CacheLayer, get_cache_layer
from spend_service.models.codec import (
    decode_aggregate,
    decode_records,
    encode_aggregate,
    encode_records,
)
from spend_service.models.records import CacheEntry
from spend_service.sources.base import SourceDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    entry: CacheEntry
    tier: str
    write_through: bool


class CaptureStoreProvider:
    name = "capture"

    def __init__(self, capture: AcquisitionLayer):
        self._capture = capture

    async def resolve(self, definition: SourceDefinition) -> Optional[Resolution]:
        raw = await self._capture.get(definition.capture_store_key)
        if raw is None:
            return None
        return Resolution(definition.build_entry(raw), self.name, write_through=True)


class ProcessedCacheProvider:
    name = "processed"

    def __init__(self, durable: CacheLayer):
        self._durable = durable

    async def resolve(self, definition: SourceDefinition) -> Optional[Resolution]:
        source_id = definition.id.value
        records_blob = await self._durable.get(source_id, RECORDS)
        aggregate_blob = await self._durable.get(source_id, AGGREGATE)
        if records_blob is None or aggregate_blob is None:
            return None
        records = tuple(decode_records(records_blob))
        aggregate = decode_aggregate(aggregate_blob, records)
        return Resolution(CacheEntry(records, aggregate), self.name, write_through=False)


class RawCacheProvider:
    name = "raw"

    def __init__(self, durable: CacheLayer):
        self._durable = durable

    async def resolve(self, definition: SourceDefinition) -> Optional[Resolution]:
        raw = await self._durable.get(definition.id.value, RAW)
        if raw is None:
            return None
        return Resolution(definition.build_entry(raw), self.name, write_through=True)


class PersistentStoreAdapter:
    """采集存储 + 持久化缓存的统一读写入口"""

    def __init__(
        self,
        capture: AcquisitionLayer = None,
        durable: CacheLayer = None,
        providers: Sequence[Any] = None,
    ):
        self._capture = capture or get_acquisition_layer()
        self._durable = durable or get_cache_layer()
        self._capture_provider = CaptureStoreProvider(self._capture)
        self._providers = list(providers) if providers is not None else [
            self._capture_provider,
            ProcessedCacheProvider(self._durable),
            RawCacheProvider(self._durable),
        ]

    @property
    def capture(self) -> AcquisitionLayer:
        return self._capture

    @property
    def durable(self) -> CacheLayer:
        return self._durable

    async def _try(self, provider, definition: SourceDefinition) -> Optional[Resolution]:
        """单层读取或解码失败按未命中处理"""
        try:
            return await provider.resolve(definition)
        except Exception as exc:
            logger.warning(f"{definition.id.value} 从 {provider.name} 层读取失败，尝试下一层: {exc}")
            return None

    async def resolve(self, definition: SourceDefinition) -> Optional[Resolution]:
        for provider in self._providers:
            found = await self._try(provider, definition)
            if found is not None:
                logger.info(
                    f"{definition.id.value} 从 {found.tier} 层加载 {len(found.entry.records)} 条记录"
                )
                return found
            logger.debug(f"{definition.id.value} 在 {provider.name} 层未命中")
        return None

    async def read_capture(self, definition: SourceDefinition) -> Optional[Resolution]:
        """只走采集存储这一层（刷新用）"""
        return await self._try(self._capture_provider, definition)

    # ── 写入 ──────────────────────────────────────────────

    async def _write_parts(self, source_id: str, parts: dict) -> List[str]:
        """
        逐个子键写入，返回告警列表

        records / aggregate 任一写失败时两者一起清除，避免之后读到不配对的数据；
        失败的子键同样清除旧值，让回退链落到仍然一致的层。
        """
        warnings: List[str] = []
        failed = set()
        for part, value in parts.items():
            try:
                await self._durable.set(value, source_id, part)
            except DurableCacheWriteError as exc:
                logger.warning(f"⚠️ {exc}（内存数据不受影响）")
                warnings.append(str(exc))
                failed.add(part)

        if failed:
            if failed & {RECORDS, AGGREGATE}:
                failed |= {RECORDS, AGGREGATE}
            await self._durable.delete(source_id, *sorted(failed))
        return warnings

    async def write_processed(self, source_id: str, entry: CacheEntry) -> List[str]:
        return await self._write_parts(source_id, {
            RECORDS: encode_records(entry.records),
            AGGREGATE: encode_aggregate(entry.aggregate),
        })

    async def write_import(self, source_id: str, raw: Any, entry: CacheEntry) -> List[str]:
        return await self._write_parts(source_id, {
            RAW: raw,
            RECORDS: encode_records(entry.records),
            AGGREGATE: encode_aggregate(entry.aggregate),
        })

    async def clear(self, source_id: str) -> None:
        await self._durable.delete(source_id)

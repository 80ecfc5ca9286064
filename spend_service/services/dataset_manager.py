"""
数据集缓存管理器
按来源维护内存中的数据集、最近访问时间以及两个后台任务：
  刷新任务：定期重读采集存储，数据变化时整体替换已加载来源的缓存项
  回收任务：卸载长时间未访问的来源，持久化缓存不受影响

来源状态：Unloaded → Loading → Loaded，Loaded 经回收或显式卸载回到 Unloaded。
加载失败不产生错误状态，来源保持 Unloaded，调用方可重试。

所有逻辑运行在同一个事件循环上，后台任务由 AsyncIOScheduler 调度，不使用线程。
同一来源的并发 load 共享同一次加载；每次提交缓存项都会递增来源的代次，
load / 刷新在等待存储期间若代次已变化则丢弃自己的结果，导入总是直接提交。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from spend_service.config import settings
from spend_service.errors import UnknownSourceError
from spend_service.models.codec import records_differ
from spend_service.models.records import CacheEntry
from spend_service.services.store_adapter import PersistentStoreAdapter
from spend_service.sources import SOURCES
from spend_service.sources.base import ImportMethod, SourceDefinition

logger = logging.getLogger(__name__)


class SourceState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"


@dataclass(frozen=True)
class ImportResult:
    source_id: str
    record_count: int
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def _key(source_id: Any) -> str:
    return getattr(source_id, "value", source_id)


class DatasetCacheManager:
    """数据集缓存管理器，UI 层只依赖这里的公开方法"""

    def __init__(
        self,
        adapter: PersistentStoreAdapter = None,
        registry: Mapping[str, SourceDefinition] = None,
        *,
        refresh_interval: float = None,
        eviction_interval: float = None,
        idle_threshold: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._adapter = adapter or PersistentStoreAdapter()
        self._registry = SOURCES if registry is None else registry
        self._refresh_interval = refresh_interval or settings.REFRESH_INTERVAL_SECONDS
        self._eviction_interval = eviction_interval or settings.EVICTION_INTERVAL_SECONDS
        self._idle_threshold = idle_threshold or settings.IDLE_EVICTION_SECONDS
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._last_access: Dict[str, float] = {}
        self._generation: Dict[str, int] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._warnings: Dict[str, Tuple[str, ...]] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None

    # ── 查询 ──────────────────────────────────────────────

    def is_loaded(self, source_id: str) -> bool:
        return _key(source_id) in self._entries

    def state(self, source_id: str) -> SourceState:
        sid = _key(source_id)
        if sid in self._entries:
            return SourceState.LOADED
        if sid in self._inflight:
            return SourceState.LOADING
        return SourceState.UNLOADED

    def get_entry(self, source_id: str) -> Optional[CacheEntry]:
        """只读访问，不更新访问时间"""
        return self._entries.get(_key(source_id))

    def last_access(self, source_id: str) -> Optional[float]:
        return self._last_access.get(_key(source_id))

    def last_warnings(self, source_id: str) -> Tuple[str, ...]:
        """最近一次写入持久化缓存产生的告警"""
        return self._warnings.get(_key(source_id), ())

    @property
    def loaded_sources(self) -> FrozenSet[str]:
        return frozenset(self._entries)

    @property
    def registry(self) -> Mapping[str, SourceDefinition]:
        return self._registry

    @property
    def adapter(self) -> PersistentStoreAdapter:
        return self._adapter

    # ── 内部状态变更 ──────────────────────────────────────

    def _touch(self, sid: str) -> None:
        self._last_access[sid] = self._clock()

    def _generation_of(self, sid: str) -> int:
        return self._generation.get(sid, 0)

    def _commit(self, sid: str, entry: CacheEntry, touch: bool = True) -> None:
        """整体替换缓存项"""
        self._entries[sid] = entry
        self._generation[sid] = self._generation_of(sid) + 1
        if touch or sid not in self._last_access:
            self._touch(sid)

    async def _write_through(self, sid: str, entry: CacheEntry) -> None:
        self._warnings[sid] = tuple(await self._adapter.write_processed(sid, entry))

    # ── 加载 / 卸载 ────────────────────────────────────────

    async def load(self, source_id: str) -> bool:
        """
        加载来源数据集

        已加载时只更新访问时间并立即返回 True；否则依次尝试各存储层，
        全部未命中返回 False。并发调用共享同一次加载。
        """
        sid = _key(source_id)
        if sid in self._entries:
            self._touch(sid)
            return True

        definition = self._registry.get(sid)
        if definition is None:
            logger.warning(f"未知数据来源: {sid}")
            return False

        task = self._inflight.get(sid)
        if task is None:
            task = asyncio.ensure_future(self._load_from_tiers(sid, definition))
            self._inflight[sid] = task

            def _done(fut: asyncio.Future, sid: str = sid) -> None:
                if self._inflight.get(sid) is fut:
                    del self._inflight[sid]

            task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def _load_from_tiers(self, sid: str, definition: SourceDefinition) -> bool:
        generation = self._generation_of(sid)
        resolution = await self._adapter.resolve(definition)
        if resolution is None:
            logger.info(f"{sid} 在所有存储层均无数据")
            return False
        if self._generation_of(sid) != generation:
            logger.info(f"{sid} 加载期间缓存项已被替换，丢弃本次结果")
            return sid in self._entries

        self._commit(sid, resolution.entry)
        if resolution.write_through:
            await self._write_through(sid, resolution.entry)
        return True

    def unload(self, source_id: str) -> None:
        sid = _key(source_id)
        if self._entries.pop(sid, None) is not None:
            logger.info(f"卸载数据来源: {sid}")
        self._last_access.pop(sid, None)
        self._generation[sid] = self._generation_of(sid) + 1

    async def clear(self, source_id: str, unload: bool = False) -> None:
        """清除来源在持久化缓存中的全部子键，可选同时卸载内存数据"""
        sid = _key(source_id)
        await self._adapter.clear(sid)
        logger.info(f"{sid} 持久化缓存已清除")
        if unload:
            self.unload(sid)

    # ── 导入 / 刷新 ────────────────────────────────────────

    async def import_data(self, source_id: str, raw: Any) -> ImportResult:
        """
        显式导入：无论当前状态都重新转换、汇总、写入并替换内存数据

        顶层数据非法或结构校验失败时抛出 PayloadRejectedError，不产生任何状态变更。
        持久化缓存写入失败只记为告警，内存数据保留。
        """
        sid = _key(source_id)
        definition = self._registry.get(sid)
        if definition is None:
            raise UnknownSourceError(sid)

        payload = definition.validate_payload(raw)
        entry = definition.build_entry(payload)
        self._commit(sid, entry)
        logger.info(f"{sid} 导入完成，共 {len(entry.records)} 条记录")

        warnings = tuple(await self._adapter.write_import(sid, payload, entry))
        self._warnings[sid] = warnings
        return ImportResult(source_id=sid, record_count=len(entry.records), warnings=warnings)

    async def refresh_from_capture_store(self, source_id: str) -> bool:
        """强制从采集存储重新读取，不论当前是否已加载"""
        sid = _key(source_id)
        definition = self._registry.get(sid)
        if definition is None:
            return False

        generation = self._generation_of(sid)
        resolution = await self._adapter.read_capture(definition)
        if resolution is None:
            return False
        if self._generation_of(sid) != generation:
            logger.info(f"{sid} 刷新期间缓存项已被替换，丢弃本次结果")
            return False

        self._commit(sid, resolution.entry)
        await self._write_through(sid, resolution.entry)
        return True

    # ── 后台任务 ──────────────────────────────────────────

    async def refresh_sweep(self) -> List[str]:
        """对已加载且支持采集代理的来源重读采集存储，返回实际更新的来源"""
        updated = []
        for sid in sorted(self._entries):
            definition = self._registry.get(sid)
            if definition is None or not definition.supports(ImportMethod.CAPTURE_AGENT):
                continue
            try:
                if await self._refresh_if_changed(sid, definition):
                    updated.append(sid)
            except Exception as exc:
                logger.error(f"{sid} 后台刷新失败: {exc}", exc_info=True)
        return updated

    async def _refresh_if_changed(self, sid: str, definition: SourceDefinition) -> bool:
        generation = self._generation_of(sid)
        resolution = await self._adapter.read_capture(definition)
        if resolution is None:
            return False

        current = self._entries.get(sid)
        if current is None or self._generation_of(sid) != generation:
            # 等待期间被卸载或被替换
            return False
        if not records_differ(current.records, resolution.entry.records):
            return False

        logger.info(f"{sid} 采集数据有变化，更新缓存（{len(resolution.entry.records)} 条）")
        self._commit(sid, resolution.entry, touch=False)
        await self._write_through(sid, resolution.entry)
        return True

    async def evict_idle(self) -> List[str]:
        """卸载超过闲置阈值未访问的来源，返回被卸载的来源"""
        now = self._clock()
        stale = [
            sid for sid in sorted(self._entries)
            if now - self._last_access.get(sid, now) > self._idle_threshold
        ]
        for sid in stale:
            idle_minutes = round((now - self._last_access[sid]) / 60)
            logger.info(f"{sid} 已 {idle_minutes} 分钟未访问，回收内存")
            self.unload(sid)
        return stale

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """启动后台任务，必须在运行中的事件循环内调用"""
        if self.running:
            return
        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        scheduler.add_job(
            self.refresh_sweep,
            "interval",
            seconds=self._refresh_interval,
            id="refresh_sweep",
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self.evict_idle,
            "interval",
            seconds=self._eviction_interval,
            id="eviction_sweep",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"后台任务已启动：刷新间隔 {self._refresh_interval}s，"
            f"回收间隔 {self._eviction_interval}s，闲置阈值 {self._idle_threshold}s"
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("后台任务已停止")


# ── 模块级别单例 ──────────────────────────────────────────
_manager: Optional[DatasetCacheManager] = None


def get_dataset_manager() -> DatasetCacheManager:
    global _manager
    if _manager is None:
        _manager = DatasetCacheManager()
    return _manager

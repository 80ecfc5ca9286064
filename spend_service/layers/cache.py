"""
Layer 2 – 持久化缓存层
每个来源三个独立子键：raw / records / aggregate
优先级：MongoDB（持久化） → 文件（本地）
"""

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

from spend_service.config import settings
from spend_service.db import get_mongo_db
from spend_service.errors import DurableCacheWriteError

logger = logging.getLogger(__name__)

NAMESPACE = "dataset"
RAW = "raw"
RECORDS = "records"
AGGREGATE = "aggregate"
PARTS = (RAW, RECORDS, AGGREGATE)


def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + list(parts))
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


class CacheLayer:
    """持久化缓存层，自动根据可用连接选择后端；读失败一律视为未命中"""

    def __init__(self, cache_dir: str = None, max_bytes: int = None):
        self._cache_dir = cache_dir or settings.CACHE_DIR
        self._max_bytes = settings.DURABLE_CACHE_MAX_BYTES if max_bytes is None else max_bytes

    def _file_path(self, key: str) -> str:
        safe = key.replace(":", "_").replace("/", "_")
        return os.path.join(self._cache_dir, f"{safe}.json")

    def _collection(self):
        db = get_mongo_db()
        return db[settings.DURABLE_COLLECTION] if db is not None else None

    async def get(self, source_id: str, part: str) -> Optional[Any]:
        key = _make_key(NAMESPACE, source_id, part)

        # L1: MongoDB
        collection = self._collection()
        if collection is not None:
            try:
                doc = await collection.find_one({"key": key})
                if doc:
                    logger.debug(f"缓存命中（MongoDB）: {key}")
                    return json.loads(doc["payload"])
            except Exception as exc:
                logger.debug(f"MongoDB 读取失败: {exc}")

        # L2: 文件
        path = self._file_path(key)
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    doc = json.load(fh)
                logger.debug(f"缓存命中（文件）: {key}")
                return doc.get("value")
            except Exception as exc:
                logger.debug(f"文件缓存读取失败: {exc}")

        return None

    async def set(self, value: Any, source_id: str, part: str) -> None:
        """
        写入持久化缓存

        超过容量上限或所有后端均写入失败时抛出 DurableCacheWriteError。
        """
        key = _make_key(NAMESPACE, source_id, part)
        serialized = json.dumps(value, ensure_ascii=False)
        size = len(serialized.encode("utf-8"))
        if size > self._max_bytes:
            raise DurableCacheWriteError(key, f"超出容量上限（{size} > {self._max_bytes} 字节）")

        updated_at = datetime.now(tz=timezone.utc)

        # L1: MongoDB
        collection = self._collection()
        if collection is not None:
            try:
                await collection.update_one(
                    {"key": key},
                    {"$set": {"key": key, "payload": serialized, "updated_at": updated_at}},
                    upsert=True,
                )
                logger.debug(f"缓存写入（MongoDB）: {key}")
                return
            except Exception as exc:
                logger.warning(f"MongoDB 写入失败，改写文件缓存: {exc}")
                # 避免之后读到 MongoDB 中的旧值
                try:
                    await collection.delete_one({"key": key})
                except Exception as del_exc:
                    logger.debug(f"MongoDB 旧值清理失败: {del_exc}")

        # L2: 文件
        try:
            os.makedirs(self._cache_dir, exist_ok=True)
            path = self._file_path(key)
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(
                    {"value": value, "updated_at": updated_at.timestamp()},
                    ensure_ascii=False,
                ))
            logger.debug(f"缓存写入（文件）: {key}")
        except OSError as exc:
            raise DurableCacheWriteError(key, str(exc)) from exc

    async def delete(self, source_id: str, *parts: str) -> None:
        """删除指定子键，未指定时删除该来源全部子键"""
        for part in parts or PARTS:
            key = _make_key(NAMESPACE, source_id, part)
            collection = self._collection()
            if collection is not None:
                try:
                    await collection.delete_one({"key": key})
                except Exception as exc:
                    logger.debug(f"MongoDB 删除失败: {exc}")
            path = self._file_path(key)
            if os.path.exists(path):
                try:
                    os.remove(path)
                except OSError as exc:
                    logger.debug(f"文件缓存删除失败: {exc}")

    async def stats(self) -> dict:
        """返回各缓存后端统计信息"""
        result: dict = {}
        collection = self._collection()
        if collection is not None:
            try:
                count = await collection.count_documents({})
                result["mongodb"] = {"documents": count, "status": "healthy"}
            except Exception as exc:
                result["mongodb"] = {"status": "error", "error": str(exc)}
        else:
            result["mongodb"] = {"status": "disabled"}

        try:
            file_count = len([
                f for f in os.listdir(self._cache_dir) if f.endswith(".json")
            ]) if os.path.exists(self._cache_dir) else 0
            result["file"] = {"files": file_count, "dir": self._cache_dir, "status": "healthy"}
        except Exception as exc:
            result["file"] = {"status": "error", "error": str(exc)}
        result["max_bytes"] = self._max_bytes

        return result


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[CacheLayer] = None


def get_cache_layer() -> CacheLayer:
    global _cache
    if _cache is None:
        _cache = CacheLayer()
    return _cache

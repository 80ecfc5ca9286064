"""
Layer 1 – 采集层
读取外部采集代理写入的原始数据。对本服务只读，存在非空值即视为有新数据。
优先级：Redis → 本地采集目录（<capture_key>.json）
"""

import json
import logging
import os
from typing import Any, Optional

from spend_service.config import settings
from spend_service.db import get_redis

logger = logging.getLogger(__name__)


def _decode(raw: Any) -> Optional[Any]:
    """采集代理可能写入 JSON 字符串，也可能写入已解析对象"""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


class AcquisitionLayer:
    """采集层：按采集键读取原始数据，任何读取失败都视为未命中"""

    def __init__(self, capture_dir: str = None, key_prefix: str = None):
        self._capture_dir = capture_dir or settings.CAPTURE_DIR
        self._prefix = settings.CAPTURE_KEY_PREFIX if key_prefix is None else key_prefix

    def _file_path(self, capture_key: str) -> str:
        safe = capture_key.replace(":", "_").replace("/", "_")
        return os.path.join(self._capture_dir, f"{safe}.json")

    async def get(self, capture_key: str) -> Optional[Any]:
        # L1: Redis
        redis = get_redis()
        if redis:
            try:
                raw = await redis.get(self._prefix + capture_key)
                if raw is not None:
                    value = _decode(raw)
                    if value is not None:
                        logger.debug(f"采集数据命中（Redis）: {capture_key}")
                        return value
            except Exception as exc:
                logger.debug(f"Redis 采集数据读取失败: {exc}")

        # L2: 采集目录
        path = self._file_path(capture_key)
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    value = json.load(fh)
                if value is not None:
                    logger.debug(f"采集数据命中（文件）: {capture_key}")
                    return value
            except Exception as exc:
                logger.debug(f"采集文件读取失败: {exc}")

        return None

    async def exists(self, capture_key: str) -> bool:
        return await self.get(capture_key) is not None

    async def stats(self) -> dict:
        redis = get_redis()
        result: dict = {"redis": {"status": "enabled" if redis else "disabled"}}
        try:
            count = len([
                f for f in os.listdir(self._capture_dir) if f.endswith(".json")
            ]) if os.path.exists(self._capture_dir) else 0
            result["file"] = {"files": count, "dir": self._capture_dir, "status": "healthy"}
        except Exception as exc:
            result["file"] = {"status": "error", "error": str(exc)}
        return result


# ── 模块级别单例 ──────────────────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition

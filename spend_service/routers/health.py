"""健康检查路由"""

import logging
import time
from pathlib import Path

from fastapi import APIRouter

from spend_service import __version__
from spend_service.db import check_health
from spend_service.services.dataset_manager import get_dataset_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["健康检查"])


def _read_version() -> str:
    vf = Path(__file__).parent.parent.parent / "VERSION"
    try:
        if vf.exists():
            return vf.read_text(encoding="utf-8").strip()
    except OSError as exc:
        logger.debug(f"VERSION 文件读取失败: {exc}")
    return __version__


@router.get("/health")
async def health():
    """服务健康检查"""
    mgr = get_dataset_manager()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": _read_version(),
            "timestamp": int(time.time()),
            "service": "Spenddy DatasetService",
            "storage": await check_health(),
            "background_sweeps": mgr.running,
            "loaded_sources": sorted(mgr.loaded_sources),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe"""
    return {"ready": True}

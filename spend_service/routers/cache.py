"""
缓存管理路由
GET  /api/cache/stats     - 两级存储统计
POST /api/cache/clear     - 清理指定来源的持久化缓存
"""

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from spend_service.layers.cache import PARTS
from spend_service.models.response import ApiResponse
from spend_service.services.dataset_manager import get_dataset_manager

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(BaseModel):
    source_id: str
    unload: bool = False


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """获取采集存储、持久化缓存及内存中已加载的来源"""
    mgr = get_dataset_manager()
    return ApiResponse.ok(data={
        "capture_store": await mgr.adapter.capture.stats(),
        "durable_cache": await mgr.adapter.durable.stats(),
        "memory": {"loaded_sources": sorted(mgr.loaded_sources)},
    })


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(body: ClearRequest):
    """删除来源在持久化缓存中的 raw / records / aggregate，可选同时卸载内存数据"""
    mgr = get_dataset_manager()
    if body.source_id not in mgr.registry:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"未知数据来源: {body.source_id}",
        )
    await mgr.clear(body.source_id, unload=body.unload)
    return ApiResponse.ok(message=f"缓存已清理: {body.source_id} ({', '.join(PARTS)})")

"""
数据来源路由
GET    /api/sources                          - 来源列表及加载状态
GET    /api/sources/{source_id}              - 单个来源状态与摘要
POST   /api/sources/{source_id}/load         - 加载数据集
DELETE /api/sources/{source_id}              - 卸载数据集
POST   /api/sources/{source_id}/import       - 导入原始 JSON
POST   /api/sources/{source_id}/refresh      - 强制从采集存储刷新
GET    /api/sources/{source_id}/dataset      - 获取汇总数据集及记录
GET    /api/sources/{source_id}/breakdown/{kind} - 月度 / 商家 / 时段分布
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, HTTPException, Query, status

from spend_service.layers.analysis import get_analysis_layer
from spend_service.layers.processing import get_processing_layer
from spend_service.models.codec import encode_aggregate, encode_records
from spend_service.models.response import ApiResponse
from spend_service.services.dataset_manager import get_dataset_manager
from spend_service.sources.base import SourceDefinition
from spend_service.sources.fields import parse_local_time

router = APIRouter(prefix="/api/sources", tags=["数据来源"])

_BREAKDOWNS = ("monthly", "counterparties", "hourly")


def _require_source(source_id: str) -> SourceDefinition:
    definition = get_dataset_manager().registry.get(source_id)
    if definition is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"未知数据来源: {source_id}",
        )
    return definition


def _describe(definition: SourceDefinition) -> dict:
    mgr = get_dataset_manager()
    sid = definition.id.value
    info = {
        "id": sid,
        "name": definition.name,
        "description": definition.description,
        "import_methods": sorted(m.value for m in definition.import_methods),
        "state": mgr.state(sid).value,
    }
    entry = mgr.get_entry(sid)
    if entry is not None:
        info["summary"] = encode_aggregate(entry.aggregate)
    return info


@router.get("", response_model=ApiResponse)
async def list_sources():
    """列出所有已注册来源"""
    mgr = get_dataset_manager()
    sources = [_describe(d) for d in mgr.registry.values()]
    return ApiResponse.ok(data={"count": len(sources), "sources": sources})


@router.get("/{source_id}", response_model=ApiResponse)
async def get_source(source_id: str):
    """来源状态（只读，不更新访问时间）"""
    return ApiResponse.ok(data=_describe(_require_source(source_id)))


@router.post("/{source_id}/load", response_model=ApiResponse)
async def load_source(source_id: str):
    """加载数据集；所有存储层都没有数据时 loaded 为 false"""
    _require_source(source_id)
    mgr = get_dataset_manager()
    loaded = await mgr.load(source_id)
    return ApiResponse.ok(
        data={"source_id": source_id, "loaded": loaded},
        message="加载成功" if loaded else "暂无数据",
        warnings=list(mgr.last_warnings(source_id)),
    )


@router.delete("/{source_id}", response_model=ApiResponse)
async def unload_source(source_id: str):
    _require_source(source_id)
    get_dataset_manager().unload(source_id)
    return ApiResponse.ok(data={"source_id": source_id, "loaded": False}, message="已卸载")


@router.post("/{source_id}/import", response_model=ApiResponse)
async def import_source(source_id: str, payload: Any = Body(...)):
    """
    导入原始导出数据

    数据非法时返回 422；持久化缓存写入失败时仍返回成功并附带 warnings
    """
    _require_source(source_id)
    result = await get_dataset_manager().import_data(source_id, payload)
    return ApiResponse.ok(
        data={"source_id": result.source_id, "record_count": result.record_count},
        message=f"导入成功，共 {result.record_count} 条记录",
        warnings=list(result.warnings),
    )


@router.post("/{source_id}/refresh", response_model=ApiResponse)
async def refresh_source(source_id: str):
    """强制读取采集存储的最新数据"""
    _require_source(source_id)
    mgr = get_dataset_manager()
    refreshed = await mgr.refresh_from_capture_store(source_id)
    return ApiResponse.ok(
        data={"source_id": source_id, "refreshed": refreshed},
        message="刷新成功" if refreshed else "采集存储暂无数据",
        warnings=list(mgr.last_warnings(source_id)) if refreshed else [],
    )


async def _loaded_entry(source_id: str):
    _require_source(source_id)
    mgr = get_dataset_manager()
    if not await mgr.load(source_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{source_id} 暂无数据，请先导入或安装采集插件",
        )
    return mgr.get_entry(source_id)


@router.get("/{source_id}/dataset", response_model=ApiResponse)
async def get_dataset(
    source_id: str,
    include_records: bool = Query(default=True),
):
    """获取汇总数据集（会触发加载并更新访问时间）"""
    entry = await _loaded_entry(source_id)
    data = {"source_id": source_id, "aggregate": encode_aggregate(entry.aggregate)}
    if include_records:
        data["records"] = encode_records(entry.records)
    return ApiResponse.ok(data=data)


@router.get("/{source_id}/breakdown/{kind}", response_model=ApiResponse)
async def get_breakdown(
    source_id: str,
    kind: str,
    limit: int = Query(default=10, ge=1, le=100),
    start: Optional[str] = Query(default=None, description="开始时间 ISO 格式"),
    end: Optional[str] = Query(default=None, description="结束时间 ISO 格式"),
):
    """消费分布：monthly / counterparties / hourly"""
    if kind not in _BREAKDOWNS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"不支持的分布类型: {kind}，可选 {', '.join(_BREAKDOWNS)}",
        )
    entry = await _loaded_entry(source_id)

    try:
        start_ts = parse_local_time(start) if start else None
        end_ts = parse_local_time(end) if end else None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    records = entry.records
    if start_ts or end_ts:
        records = get_processing_layer().filter_by_time_span(records, start_ts, end_ts)

    analysis = get_analysis_layer()
    if kind == "monthly":
        rows = analysis.monthly_breakdown(records)
    elif kind == "counterparties":
        rows = analysis.top_counterparties(records, limit=limit)
    else:
        rows = analysis.hourly_weekday_matrix(records)
    return ApiResponse.ok(data={"source_id": source_id, "kind": kind, "rows": rows})

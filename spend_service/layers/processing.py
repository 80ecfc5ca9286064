"""
Layer 3 – 数据处理层
对规范化记录集合计算汇总数据集。纯函数，不做任何 I/O。
"""

import logging
import math
from datetime import datetime
from typing import List, Optional, Sequence

from spend_service.models.records import AggregateDataset, CanonicalRecord, TimeSpan

logger = logging.getLogger(__name__)


class ProcessingLayer:
    """数据处理层：汇总 + 时间范围过滤"""

    def aggregate(self, records: Sequence[CanonicalRecord]) -> AggregateDataset:
        """
        计算汇总数据集

        求和使用 math.fsum，结果与输入顺序无关；
        去重按字段原值精确匹配（区分大小写）。
        """
        records = tuple(records)
        count = len(records)
        if count == 0:
            return AggregateDataset()

        total = math.fsum(r.gross_amount for r in records)
        timestamps = [r.timestamp for r in records]

        return AggregateDataset(
            records=records,
            record_count=count,
            total_amount=total,
            average_amount=total / count,
            total_tips=math.fsum(r.tip_amount for r in records),
            total_fees=math.fsum(r.fees_total for r in records),
            distinct_counterparties=len({r.counterparty_name for r in records}),
            distinct_areas=len({r.counterparty_area for r in records}),
            time_span=TimeSpan(earliest=min(timestamps), latest=max(timestamps)),
        )

    def filter_by_time_span(
        self,
        records: Sequence[CanonicalRecord],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[CanonicalRecord]:
        """按时间范围过滤记录（闭区间）"""
        result = list(records)
        if start is not None:
            result = [r for r in result if r.timestamp >= start]
        if end is not None:
            result = [r for r in result if r.timestamp <= end]
        return result


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor


def build_aggregate(records: Sequence[CanonicalRecord]) -> AggregateDataset:
    """默认汇总器"""
    return get_processing_layer().aggregate(records)

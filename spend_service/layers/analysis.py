"""
Layer 4 – 消费分析层
在规范化记录上计算看板所需的分布：月度消费、常去商家、时段分布
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from spend_service.models.records import CanonicalRecord

logger = logging.getLogger(__name__)

_FRAME_COLUMNS = [
    "id",
    "timestamp",
    "month_key",
    "weekday",
    "hour_of_day",
    "gross_amount",
    "fees_total",
    "tip_amount",
    "counterparty_name",
]

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


class AnalysisLayer:
    """消费分析层：记录集合 → DataFrame → 分布统计"""

    def to_frame(self, records: Sequence[CanonicalRecord]) -> pd.DataFrame:
        if not records:
            return pd.DataFrame(columns=_FRAME_COLUMNS)
        return pd.DataFrame(
            [{col: getattr(r, col) for col in _FRAME_COLUMNS} for r in records]
        )

    # ── 月度消费 ──────────────────────────────────────────

    def monthly_breakdown(self, records: Sequence[CanonicalRecord]) -> List[Dict[str, Any]]:
        """按 month_key 汇总：金额、笔数、费用、小费，按月份升序"""
        df = self.to_frame(records)
        if df.empty:
            return []
        grouped = (
            df.groupby("month_key")
            .agg(
                total_amount=("gross_amount", "sum"),
                record_count=("id", "count"),
                total_fees=("fees_total", "sum"),
                total_tips=("tip_amount", "sum"),
            )
            .reset_index()
            .sort_values("month_key")
        )
        return [
            {
                "month": row.month_key,
                "total_amount": round(float(row.total_amount), 2),
                "record_count": int(row.record_count),
                "total_fees": round(float(row.total_fees), 2),
                "total_tips": round(float(row.total_tips), 2),
            }
            for row in grouped.itertuples(index=False)
        ]

    # ── 常去商家 ──────────────────────────────────────────

    def top_counterparties(
        self, records: Sequence[CanonicalRecord], limit: int = 10
    ) -> List[Dict[str, Any]]:
        """按订单数降序排列的商家，同数量按名称排序保证结果稳定"""
        df = self.to_frame(records)
        if df.empty:
            return []
        grouped = (
            df.groupby("counterparty_name")
            .agg(record_count=("id", "count"), total_amount=("gross_amount", "sum"))
            .reset_index()
        )
        grouped["average_amount"] = grouped["total_amount"] / grouped["record_count"]
        grouped = grouped.sort_values(
            ["record_count", "counterparty_name"], ascending=[False, True]
        ).head(limit)
        return [
            {
                "counterparty": row.counterparty_name,
                "record_count": int(row.record_count),
                "total_amount": round(float(row.total_amount), 2),
                "average_amount": round(float(row.average_amount), 2),
            }
            for row in grouped.itertuples(index=False)
        ]

    # ── 时段分布 ──────────────────────────────────────────

    def hourly_weekday_matrix(self, records: Sequence[CanonicalRecord]) -> List[Dict[str, Any]]:
        """(星期, 小时) 订单数，只返回非零格子"""
        df = self.to_frame(records)
        if df.empty:
            return []
        counts = df.groupby(["weekday", "hour_of_day"]).size().reset_index(name="record_count")
        order = {day: i for i, day in enumerate(WEEKDAYS)}
        counts["day_index"] = counts["weekday"].map(order)
        counts = counts.sort_values(["day_index", "hour_of_day"])
        return [
            {"weekday": row.weekday, "hour": int(row.hour_of_day), "count": int(row.record_count)}
            for row in counts.itertuples(index=False)
        ]


# ── 模块级别单例 ──────────────────────────────────────────
_analysis: Optional[AnalysisLayer] = None


def get_analysis_layer() -> AnalysisLayer:
    global _analysis
    if _analysis is None:
        _analysis = AnalysisLayer()
    return _analysis

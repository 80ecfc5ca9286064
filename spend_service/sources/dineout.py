"""
Dineout 到店订单转换器
只保留 history_status 为 COMPLETED 的记录；人数来自账单明细的 guestCount
"""

import logging
from typing import Any, List, Optional

from pydantic import Field, ValidationError

from spend_service.models.records import CanonicalRecord
from spend_service.sources.base import SourceId, transform_elements
from spend_service.sources.fields import (
    Amount,
    RawModel,
    Text,
    coerce_int,
    coerce_text,
    derive_temporal,
    dig,
    from_epoch,
    is_completed,
    parse_metadata,
)

logger = logging.getLogger(__name__)

_COMPLETED = frozenset({"COMPLETED"})
_TAGS = ("Dine-In",)


class DineoutBill(RawModel):
    totalBillAmount: Amount = 0.0
    totalDiscountAmount: Amount = 0.0


class DineoutStore(RawModel):
    name: Text = ""
    address: Text = ""
    locality: Text = ""
    cityName: Text = ""


class DineoutMetadata(RawModel):
    bill: DineoutBill
    storeInfo: Optional[DineoutStore] = None
    items: Optional[List[Any]] = None
    pax: Optional[Any] = None


class DineoutOrder(RawModel):
    order_id: Text = Field(min_length=1)
    created_at: Any
    history_status: Text = ""
    order_data: Optional[dict] = None

    # 扁平字段（无任务元数据时使用）
    restaurant_name: Text = ""
    total_amount: Amount = 0.0
    discount_amount: Amount = 0.0
    payment_method: Text = ""
    city: Text = ""
    locality: Text = ""
    pax: Optional[Any] = None


def _job(order: DineoutOrder) -> Optional[dict]:
    job = dig(order.order_data, "orders", 0, "order_jobs", 0)
    return job if isinstance(job, dict) else None


def _metadata(order: DineoutOrder, job: Optional[dict]) -> Optional[DineoutMetadata]:
    if job is None:
        return None
    metadata = parse_metadata(job.get("metadata"))
    if metadata is None:
        return None
    try:
        return DineoutMetadata.model_validate(metadata)
    except ValidationError as exc:
        logger.debug(f"Dineout 订单 {order.order_id} 元数据缺少账单，使用扁平字段: {exc}")
        return None


def _to_record(order: DineoutOrder) -> Optional[CanonicalRecord]:
    if not is_completed(order.history_status, _COMPLETED):
        return None

    ts = from_epoch(order.created_at)
    job = _job(order)
    meta = _metadata(order, job)
    payment = coerce_text(dig(job, "payment_info", 0, "paymentMethodDisplayName"))

    if meta is not None:
        store = meta.storeInfo or DineoutStore()
        total = meta.bill.totalBillAmount
        discount = meta.bill.totalDiscountAmount
        name = store.name or "Unknown Restaurant"
        city, area = store.cityName, store.locality
        party_size = coerce_int(dig(meta.items, 0, "guestCount"))
        if party_size is None:
            party_size = coerce_int(meta.pax)
        address = store.address
    else:
        total = order.total_amount
        discount = order.discount_amount
        name = order.restaurant_name or "Unknown Restaurant"
        city, area = order.city, order.locality
        party_size = coerce_int(order.pax)
        address = ""
        payment = payment or order.payment_method

    return CanonicalRecord(
        id=order.order_id,
        source_id=SourceId.DINEOUT.value,
        **derive_temporal(ts),
        gross_amount=total,
        net_amount=total,
        fees_total=0.0,
        tip_amount=0.0,
        counterparty_name=name,
        counterparty_tags=_TAGS,
        counterparty_city=city,
        counterparty_area=area,
        discounts={"order": discount} if discount else {},
        payment_method=payment or "Unknown",
        party_size=party_size,
        restaurant_address=address,
    )


def transform(raw: Any) -> List[CanonicalRecord]:
    return transform_elements(raw, DineoutOrder, _to_record, SourceId.DINEOUT)

"""
Instamart 生鲜订单转换器

新版导出在 order_data.orders[0].order_jobs[0].metadata 中携带完整账单
（charges / taxes / discounts 均为 {type, value} 列表）；旧版只有扁平字段。
先走完整路径，缺少任务元数据或账单时退回扁平路径。
"""

import logging
from typing import Any, List, Optional

from pydantic import Field, ValidationError

from spend_service.models.records import CanonicalRecord, GeoPoint, LineItem
from spend_service.sources.base import SourceId, transform_elements
from spend_service.sources.fields import (
    Amount,
    RawModel,
    Text,
    coerce_amount,
    coerce_int,
    coerce_text,
    decompose_charges,
    derive_temporal,
    dig,
    from_epoch,
    is_completed,
    itemize_discounts,
    parse_metadata,
    unique,
)

logger = logging.getLogger(__name__)

_COMPLETED = frozenset({"COMPLETED", "DELIVERED"})

_FEE_BUCKETS = {
    "delivery": frozenset({"DELIVERY_FEE", "DELIVERY_CHARGE", "DELIVERY_CHARGES"}),
    "packaging": frozenset({"PACKAGING_FEE", "PACKAGING_CHARGES", "PACKING_CHARGES"}),
    "service": frozenset({"HANDLING_FEE", "SERVICE_FEE", "CONVENIENCE_FEE", "SMALL_CART_FEE"}),
    "tax": frozenset({"GST", "TAX", "CGST", "SGST", "IGST"}),
}

_DEFAULT_TAGS = ("Grocery",)


class InstamartBill(RawModel):
    totalBill: Amount = 0.0
    charges: Optional[List[Any]] = None
    taxes: Optional[List[Any]] = None
    discounts: Optional[List[Any]] = None
    itemQuantity: Optional[Any] = None


class InstamartStore(RawModel):
    name: Text = ""
    area: Text = ""
    cityName: Text = ""
    location: Optional[dict] = None
    categories: Optional[List[Any]] = None


class InstamartAddress(RawModel):
    area: Text = ""
    city: Text = ""
    lat: Amount = 0.0
    lng: Amount = 0.0


class InstamartItem(RawModel):
    name: Text = ""
    quantity: Amount = 0.0


class InstamartJobMetadata(RawModel):
    orderTotal: Optional[Amount] = None
    bill: InstamartBill
    storeInfo: Optional[InstamartStore] = None
    address: Optional[InstamartAddress] = None
    items: Optional[List[InstamartItem]] = None


class InstamartOrder(RawModel):
    order_id: Text = Field(min_length=1)
    created_at: Any
    history_status: Text = ""
    order_data: Optional[dict] = None

    # 旧版扁平字段
    store_name: Text = ""
    total_amount: Amount = 0.0
    discount_amount: Amount = 0.0
    item_count: Optional[Any] = None
    coupon_code: Text = ""
    item_list: Optional[List[Any]] = None


def _job_metadata(order: InstamartOrder) -> Optional[InstamartJobMetadata]:
    job = dig(order.order_data, "orders", 0, "order_jobs", 0)
    if not isinstance(job, dict):
        return None
    metadata = parse_metadata(job.get("metadata"))
    if metadata is None:
        return None
    try:
        return InstamartJobMetadata.model_validate(metadata)
    except ValidationError as exc:
        logger.debug(f"Instamart 订单 {order.order_id} 任务元数据不完整，使用扁平字段: {exc}")
        return None


def _category_tags(store: InstamartStore) -> tuple:
    names = []
    for category in store.categories or ():
        if isinstance(category, dict):
            names.append(coerce_text(category.get("name")))
        else:
            names.append(coerce_text(category))
    return unique(names) or _DEFAULT_TAGS


def _item_count(bill: InstamartBill, items: list) -> int:
    quantity = coerce_int(bill.itemQuantity)
    return len(items) if quantity is None else quantity


def _store_location(store: InstamartStore) -> Optional[GeoPoint]:
    lat = coerce_amount(dig(store.location, "latitude"))
    lng = coerce_amount(dig(store.location, "longitude"))
    if not lat and not lng:
        return None
    return GeoPoint(lat=lat, lng=lng)


def _rich_record(order: InstamartOrder, meta: InstamartJobMetadata) -> CanonicalRecord:
    ts = from_epoch(order.created_at)
    bill = meta.bill
    store = meta.storeInfo or InstamartStore()
    address = meta.address or InstamartAddress()
    items = meta.items or []

    fees = decompose_charges(list(bill.charges or []) + list(bill.taxes or []), _FEE_BUCKETS)
    gross = bill.totalBill or meta.orderTotal or order.total_amount
    coupon = coerce_text(dig(order.order_data, "orders", 0, "coupon_code")) or order.coupon_code
    payment = coerce_text(
        dig(order.order_data, "orders", 0, "order_jobs", 0, "payment_info", 0, "paymentMethodDisplayName")
    )

    return CanonicalRecord(
        id=order.order_id,
        source_id=SourceId.INSTAMART.value,
        **derive_temporal(ts),
        gross_amount=gross,
        net_amount=gross,
        fees_total=sum(fees.values()),
        tip_amount=0.0,
        counterparty_name=store.name or order.store_name,
        counterparty_tags=_category_tags(store),
        counterparty_city=store.cityName or address.city,
        counterparty_area=store.area or address.area,
        discounts=itemize_discounts(bill.discounts),
        payment_method=payment or "Unknown",
        counterparty_location=_store_location(store),
        delivery_location=(
            GeoPoint(lat=address.lat, lng=address.lng) if address.lat and address.lng else None
        ),
        line_items=tuple(LineItem(name=i.name, quantity=i.quantity) for i in items),
        fee_breakdown=fees,
        item_count=_item_count(bill, items),
        coupon_applied=coupon or None,
        delivery_area=address.area,
        delivery_city=address.city,
    )


def _minimal_record(order: InstamartOrder) -> CanonicalRecord:
    ts = from_epoch(order.created_at)
    items = [
        LineItem(name=coerce_text(i.get("name")), quantity=coerce_amount(i.get("quantity")))
        for i in order.item_list or []
        if isinstance(i, dict)
    ]
    return CanonicalRecord(
        id=order.order_id,
        source_id=SourceId.INSTAMART.value,
        **derive_temporal(ts),
        gross_amount=order.total_amount,
        net_amount=order.total_amount - order.discount_amount,
        fees_total=0.0,
        tip_amount=0.0,
        counterparty_name=order.store_name,
        counterparty_tags=_DEFAULT_TAGS,
        discounts={"order": order.discount_amount} if order.discount_amount else {},
        line_items=tuple(items) if items else None,
        item_count=coerce_int(order.item_count),
        coupon_applied=order.coupon_code or None,
    )


def _to_record(order: InstamartOrder) -> Optional[CanonicalRecord]:
    # 旧版扁平导出没有 history_status
    if not is_completed(order.history_status, _COMPLETED, allow_missing=True):
        return None
    meta = _job_metadata(order)
    if meta is not None:
        return _rich_record(order, meta)
    return _minimal_record(order)


def transform(raw: Any) -> List[CanonicalRecord]:
    return transform_elements(raw, InstamartOrder, _to_record, SourceId.INSTAMART)

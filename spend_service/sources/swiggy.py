"""
Swiggy 外卖订单转换器
原始数据为采集代理抓取的订单数组，金额字段可能是带千分位的字符串
"""

from typing import Any, List, Optional, Union

from pydantic import Field

from spend_service.models.records import CanonicalRecord, GeoPoint, LineItem
from spend_service.sources.base import SourceId, transform_elements
from spend_service.sources.fields import (
    Amount,
    RawModel,
    Text,
    coerce_amount,
    coerce_int,
    decompose_charges,
    derive_temporal,
    is_completed,
    named_charges,
    parse_local_time,
    unique,
)

_COMPLETED = frozenset({"DELIVERED", "COMPLETED"})

# Swiggy 的 charges 为 {名称: 金额}，按名称精确归类；
# "Total Delivery Fees"、"Cancellation Fee" 等汇总 / 无关项不计入
_FEE_BUCKETS = {
    "delivery": frozenset({"DELIVERY CHARGES"}),
    "packaging": frozenset({"PACKING CHARGES"}),
    "service": frozenset({"CONVENIENCE FEE", "SERVICE CHARGES"}),
    "tax": frozenset({"GST", "SERVICE TAX", "VAT"}),
}


class SwiggyCategory(RawModel):
    category: Text = ""
    sub_category: Text = ""


class SwiggyItem(RawModel):
    name: Text = ""
    quantity: Amount = 0.0
    final_price: Amount = 0.0
    total: Amount = 0.0
    category_details: Optional[SwiggyCategory] = None


class SwiggyAddress(RawModel):
    area: Text = ""
    city: Text = ""
    lat: Amount = 0.0
    lng: Amount = 0.0


class SwiggyOrder(RawModel):
    order_id: Text = Field(min_length=1)
    order_time: Text = Field(min_length=1)
    order_status: Text = ""

    order_total: Amount = 0.0
    order_total_with_tip: Optional[Amount] = None
    net_total: Amount = 0.0
    item_total: Amount = 0.0
    charges: Any = None
    order_discount: Amount = 0.0
    coupon_discount: Amount = 0.0
    coupon_applied: Text = ""
    payment_method: Text = ""

    restaurant_name: Text = ""
    restaurant_cuisine: Optional[List[Text]] = None
    restaurant_city_name: Text = ""
    restaurant_locality: Text = ""
    restaurant_lat_lng: Text = ""
    restaurant_customer_distance: Optional[Amount] = None

    delivery_address: Optional[SwiggyAddress] = None
    order_items: Optional[List[SwiggyItem]] = None

    ordered_time_in_seconds: Optional[Union[int, float, str]] = None
    delivered_time_in_seconds: Optional[Union[int, float, str]] = None


def _restaurant_location(lat_lng: str) -> Optional[GeoPoint]:
    parts = lat_lng.split(",")
    if len(parts) != 2:
        return None
    lat, lng = coerce_amount(parts[0]), coerce_amount(parts[1])
    if not lat and not lng:
        return None
    return GeoPoint(lat=lat, lng=lng)


def _delivery_time(order: SwiggyOrder) -> Optional[int]:
    ordered = coerce_int(order.ordered_time_in_seconds)
    delivered = coerce_int(order.delivered_time_in_seconds)
    if not ordered or not delivered:
        return None
    return delivered - ordered


def _to_record(order: SwiggyOrder) -> Optional[CanonicalRecord]:
    if not is_completed(order.order_status, _COMPLETED, allow_missing=True):
        return None

    ts = parse_local_time(order.order_time)
    items = order.order_items or []
    fees = decompose_charges(named_charges(order.charges), _FEE_BUCKETS)

    gross = order.order_total if order.order_total_with_tip is None else order.order_total_with_tip
    tip = max(gross - order.order_total, 0.0)

    categories = unique(
        value
        for item in items
        if item.category_details is not None
        for value in (item.category_details.category, item.category_details.sub_category)
    )

    address = order.delivery_address or SwiggyAddress()
    delivery_location = (
        GeoPoint(lat=address.lat, lng=address.lng) if address.lat and address.lng else None
    )

    return CanonicalRecord(
        id=order.order_id,
        source_id=SourceId.SWIGGY.value,
        **derive_temporal(ts),
        gross_amount=gross,
        net_amount=order.net_total,
        fees_total=sum(fees.values()),
        tip_amount=tip,
        counterparty_name=order.restaurant_name,
        counterparty_tags=tuple(order.restaurant_cuisine or ()),
        counterparty_city=order.restaurant_city_name,
        counterparty_area=order.restaurant_locality,
        discounts={"order": order.order_discount, "coupon": order.coupon_discount},
        payment_method=order.payment_method or "Unknown",
        counterparty_location=_restaurant_location(order.restaurant_lat_lng),
        delivery_location=delivery_location,
        line_items=tuple(
            LineItem(name=item.name, quantity=item.quantity, price=item.final_price or item.total)
            for item in items
        ),
        # 扩展字段
        fee_breakdown=fees,
        item_total=order.item_total,
        food_categories=categories,
        primary_category=categories[0] if categories else "Unknown",
        coupon_applied=order.coupon_applied or None,
        delivery_area=address.area,
        delivery_city=address.city,
        delivery_time_seconds=_delivery_time(order),
        distance_km=order.restaurant_customer_distance,
    )


def transform(raw: Any) -> List[CanonicalRecord]:
    return transform_elements(raw, SwiggyOrder, _to_record, SourceId.SWIGGY)

"""
Inventory schemas
"""
import hashlib
import json
from typing import Any, Iterable, List, Optional
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from stockflow.core.exceptions import ValidationError


class ReservationItem(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class AvailabilityResult(BaseModel):
    available: bool
    reason: Optional[str] = None


class ReservationOutcome(BaseModel):
    order_id: str
    items: List[ReservationItem]
    status: str
    replayed: bool = False


def normalize_items(items: Optional[Iterable[Any]]) -> List[ReservationItem]:
    """
    Validate reservation lines and merge duplicate products.

    Accepts dicts or ReservationItem instances. Merged lines keep the
    position of the product's first appearance.

    Raises:
        ValidationError: no items, blank product id, or non-positive quantity
    """
    if not items:
        raise ValidationError("At least one item is required")

    merged: dict = {}
    try:
        for raw in items:
            item = raw if isinstance(raw, ReservationItem) else ReservationItem.model_validate(raw)
            merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"Invalid item {field}: {first.get('msg')}",
            details={"field": field},
        ) from e

    return [ReservationItem(product_id=pid, quantity=qty) for pid, qty in merged.items()]


def canonical_items(items: List[ReservationItem]) -> List[dict]:
    """Sorted plain-dict form stored in the reservation log."""
    return [
        {"product_id": item.product_id, "quantity": item.quantity}
        for item in sorted(items, key=lambda i: i.product_id)
    ]


def items_fingerprint(items: List[ReservationItem]) -> str:
    payload = json.dumps(canonical_items(items), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()

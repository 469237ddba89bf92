"""
Order schemas
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from stockflow.core.exceptions import ValidationError

CENTS = Decimal("0.01")


class ShippingAddress(BaseModel):
    name: str = Field(min_length=1)
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)
    country: str = "US"
    phone: Optional[str] = None


class OrderItemIn(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)


class OrderSubmission(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_address: ShippingAddress
    payment_method: str = Field(default="credit_card", min_length=1)

    @property
    def total_amount(self) -> Decimal:
        total = sum((item.unit_price * item.quantity for item in self.items), Decimal("0"))
        return total.quantize(CENTS, rounding=ROUND_HALF_UP)

    def stored_items(self) -> List[dict]:
        """JSON-safe item list for the saga record; prices kept as strings."""
        return [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price.quantize(CENTS, rounding=ROUND_HALF_UP)),
            }
            for item in self.items
        ]

    @classmethod
    def parse(cls, **data) -> "OrderSubmission":
        """Validate raw submission input, raising the domain ValidationError."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ()))
            raise ValidationError(
                f"Invalid order {field}: {first.get('msg')}",
                details={"field": field, "error_count": e.error_count()},
            ) from e

"""
Request schemas for the HTTP API

Field names are snake_case in Python and camelCase on the wire.
"""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Winner = Literal["buyer", "seller"]


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# Orders

class OrderItemIn(ApiModel):
    product: int
    quantity: int = Field(gt=0)
    variant: Optional[Dict[str, Any]] = None


class CreateOrderRequest(ApiModel):
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_address: Dict[str, Any] = Field(alias="shippingAddress")
    billing_address: Optional[Dict[str, Any]] = Field(default=None, alias="billingAddress")
    payment_method: str = Field(alias="paymentMethod")
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")


class TrackingIn(ApiModel):
    number: Optional[str] = Field(default=None, alias="trackingNumber")
    carrier: Optional[str] = None


class UpdateOrderStatusRequest(ApiModel):
    status: str
    tracking: Optional[TrackingIn] = None


# Escrows

class CreateEscrowRequest(ApiModel):
    order_id: int = Field(alias="orderId")


class ResolveEscrowRequest(ApiModel):
    winner: Winner


# Disputes

class CreateDisputeRequest(ApiModel):
    order_id: int = Field(alias="orderId")
    reason: str = Field(min_length=1, max_length=1000)


class ResolveDisputeRequest(ApiModel):
    winner: Winner
    notes: Optional[str] = Field(default=None, max_length=2000)


class UpdatePriorityRequest(ApiModel):
    priority: str


class AssignDisputeRequest(ApiModel):
    admin_id: Optional[int] = Field(default=None, alias="adminId")


class CloseDisputeRequest(ApiModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


# Payouts

class AddBankDetailRequest(ApiModel):
    account_holder_name: str = Field(alias="accountHolderName")
    account_number: str = Field(alias="accountNumber")
    ifsc_code: str = Field(alias="ifscCode")
    bank_name: str = Field(alias="bankName")
    account_type: Optional[str] = Field(default=None, alias="accountType")
    is_default: bool = Field(default=False, alias="isDefault")


class ClaimRequest(ApiModel):
    amount_usd: Decimal = Field(alias="amountUSD", gt=0)
    bank_detail_id: Optional[int] = Field(default=None, alias="bankDetailId")

    @field_validator("amount_usd")
    @classmethod
    def two_decimals(cls, value: Decimal) -> Decimal:
        if value.as_tuple().exponent < -2:
            raise ValueError("amountUSD supports at most 2 decimal places")
        return value


class ManualCompleteRequest(ApiModel):
    utr: str = Field(min_length=1, max_length=50)
    notes: Optional[str] = Field(default=None, max_length=1000)


class AdminPayoutStatusRequest(ApiModel):
    status: str
    note: Optional[str] = Field(default=None, max_length=1000)

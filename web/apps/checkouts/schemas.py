"""Pydantic schemas for checkouts.

This module exposes the request/validation schemas used by the checkout
API and the read models returned to clients. The payment callback schema
mirrors the gateway's webhook body field-for-field (camelCase keys).
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import Checkout, GatewayStatus, PaymentMethod, PaymentStatus


class CreateCheckoutDTO(BaseModel):
    """Schema for creating a checkout.

    Attributes:
        payment_method: One of CREDIT_CARD, BANK_TRANSFER, E_WALLET, CASH.
            Normalized to uppercase.
    """

    payment_method: PaymentMethod

    @field_validator("payment_method", mode="before")
    @classmethod
    def normalize_payment_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class PaymentCallbackDTO(BaseModel):
    """Webhook body posted by the payment gateway.

    Attributes:
        checkout_reference_number: ``checkoutReferenceNumber`` on the wire.
        status: ``success``, ``failed`` or ``pending``.
        payment_reference_number: ``paymentReferenceNumber`` on the wire,
            the gateway's own id for the payment.
    """

    model_config = ConfigDict(populate_by_name=True)

    checkout_reference_number: str = Field(alias="checkoutReferenceNumber", min_length=1, max_length=64)
    status: GatewayStatus
    payment_reference_number: str = Field(alias="paymentReferenceNumber", min_length=1, max_length=128)


class CheckoutItemReadDTO(BaseModel):
    book_id: int
    title: str = ""
    author: str = ""
    quantity: int
    price_cents: int
    subtotal_cents: int


class CheckoutReadDTO(BaseModel):
    """Checkout as returned to the buyer.

    The reference number is the checkout's external id; store ids are not
    exposed.
    """

    reference_number: str
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    total_cents: int
    payment_reference_number: Optional[str] = None
    created_at: Optional[datetime] = None
    items: list[CheckoutItemReadDTO]

    @classmethod
    def from_domain(cls, checkout: Checkout) -> "CheckoutReadDTO":
        return cls(
            reference_number=checkout.reference_number,
            payment_status=checkout.payment_status,
            payment_method=checkout.payment_method,
            total_cents=checkout.total_cents,
            payment_reference_number=checkout.payment_reference_number,
            created_at=checkout.created_at,
            items=[
                CheckoutItemReadDTO(
                    book_id=line.book_id,
                    title=line.title,
                    author=line.author,
                    quantity=line.quantity,
                    price_cents=line.price_cents,
                    subtotal_cents=line.subtotal_cents,
                )
                for line in checkout.lines
            ],
        )

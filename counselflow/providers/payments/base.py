from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class CheckoutSession(BaseModel):
    # Provider-neutral view of a checkout session; metadata values arrive as strings.
    model_config = ConfigDict(extra="ignore")

    id: str
    payment_status: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    url: str | None = None


class PaymentMetadata(BaseModel):
    """Purchase details attached to a checkout session at creation time.

    Accepts both the snake_case keys written by checkout and camelCase keys.
    Empty strings are treated as absent.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId"))
    plan_type: str = Field(validation_alias=AliasChoices("plan_type", "planType"))
    letters: int = Field(default=0, ge=0)
    base_price: Decimal = Field(default=Decimal("0"), validation_alias=AliasChoices("base_price", "basePrice"))
    discount: Decimal = Decimal("0")
    final_price: Decimal = Field(default=Decimal("0"), validation_alias=AliasChoices("final_price", "finalPrice"))
    coupon_code: str | None = Field(default=None, validation_alias=AliasChoices("coupon_code", "couponCode"))
    employee_id: str | None = Field(default=None, validation_alias=AliasChoices("employee_id", "employeeId"))
    is_super_user_coupon: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_super_user_coupon", "isSuperUserCoupon"),
    )

    @field_validator("*", mode="before")
    @classmethod
    def _blank_as_missing(cls, value: Any, info) -> Any:
        if isinstance(value, str) and not value.strip():
            if info.field_name in {"coupon_code", "employee_id"}:
                return None
            if info.field_name == "is_super_user_coupon":
                return False
            if info.field_name in {"letters", "base_price", "discount", "final_price"}:
                return 0
        return value

    @field_validator("user_id", "plan_type")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("coupon_code")
    @classmethod
    def _normalize_code(cls, value: str | None) -> str | None:
        return value.strip().upper() if value else None


class PaymentProvider(Protocol):
    async def create_session(
        self,
        *,
        amount_cents: int,
        product_name: str,
        description: str,
        metadata: dict[str, str],
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        ...

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        ...

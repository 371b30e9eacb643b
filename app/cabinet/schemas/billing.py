from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from app.services.billing_result import BillingResult


class TokenBalancesResponse(BaseModel):
    registration_token: int = 0
    free_token: int = 0
    subscription_token: int = 0
    addons_token: int = 0
    total: int = 0


class SubscriptionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    plan_id: int
    status: str
    stripe_subscription_id: str | None = None
    trial_ends_at: datetime | None = None
    next_billing_date: datetime | None = None
    canceled_at: datetime | None = None
    ends_at: datetime | None = None


class BillingActionResponse(BaseModel):
    success: bool = True
    message: str
    balances: TokenBalancesResponse | None = None
    subscription: SubscriptionInfo | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: BillingResult) -> 'BillingActionResponse':
        return cls(
            success=result.success,
            message=result.message,
            balances=TokenBalancesResponse(**result.balances.as_dict()) if result.balances else None,
            subscription=SubscriptionInfo.model_validate(result.subscription) if result.subscription else None,
            data=result.data,
        )


class DeductTokensRequest(BaseModel):
    amount: int = Field(..., ge=1)
    reason: str = Field('usage', min_length=1, max_length=255)
    bucket_priority: list[str] | None = None
    model: str | None = Field(None, max_length=255)
    analysis_type: str | None = Field(None, max_length=255)
    input_tokens: int | None = Field(None, ge=0)
    output_tokens: int | None = Field(None, ge=0)


class CustomerInfo(BaseModel):
    name: str | None = Field(None, max_length=255)
    email: str | None = Field(None, max_length=255)


class PurchaseConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price_id: str = Field(..., alias='priceId', min_length=1, max_length=255)
    customer_info: CustomerInfo | None = Field(None, alias='customerInfo')


class CreateSubscriptionRequest(BaseModel):
    plan_id: int = Field(..., ge=1)
    stripe_subscription_id: str | None = Field(None, max_length=255)
    status: Literal['active', 'trialing'] = 'active'
    trial_ends_at: datetime | None = None


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False


class ChangePlanRequest(BaseModel):
    plan_id: int = Field(..., ge=1)


class ApplyReferralRequest(BaseModel):
    referral_code: str = Field(..., min_length=3, max_length=64)


class TrackSaleRequest(BaseModel):
    affiliate_id: int = Field(..., ge=1)
    subscription_id: int = Field(..., ge=1)


class WebhookAckResponse(BaseModel):
    success: bool = True
    event_id: str | None = None
    event_type: str | None = None
    handled: bool = False
    duplicate: bool = False

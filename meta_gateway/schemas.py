"""Pydantic schemas for provider resources and stored credentials."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Set, Type, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# PROVIDER RESOURCES
# =============================================================================
# Known Graph API shapes. Every model keeps fields it does not declare
# (extra="allow") so new provider fields pass through untouched.


class MetaResource(BaseModel):
    """Base for typed Graph API objects."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"kind"})


class AdAccount(MetaResource):
    kind: Literal["ad_account"] = "ad_account"
    name: Optional[str] = None
    account_id: Optional[str] = None
    account_status: Optional[int] = None
    balance: Optional[str] = None
    currency: Optional[str] = None
    timezone_name: Optional[str] = None
    business: Optional[Dict[str, Any]] = None


class Campaign(MetaResource):
    kind: Literal["campaign"] = "campaign"
    name: Optional[str] = None
    objective: Optional[str] = None
    status: Optional[str] = None
    effective_status: Optional[str] = None
    account_id: Optional[str] = None
    daily_budget: Optional[str] = None
    lifetime_budget: Optional[str] = None
    budget_remaining: Optional[str] = None
    created_time: Optional[str] = None
    updated_time: Optional[str] = None
    start_time: Optional[str] = None
    stop_time: Optional[str] = None


class AdSet(MetaResource):
    kind: Literal["ad_set"] = "ad_set"
    name: Optional[str] = None
    campaign_id: Optional[str] = None
    status: Optional[str] = None
    effective_status: Optional[str] = None
    daily_budget: Optional[str] = None
    lifetime_budget: Optional[str] = None
    bid_amount: Optional[str] = None
    billing_event: Optional[str] = None
    optimization_goal: Optional[str] = None
    targeting: Optional[Dict[str, Any]] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class Ad(MetaResource):
    kind: Literal["ad"] = "ad"
    name: Optional[str] = None
    adset_id: Optional[str] = None
    campaign_id: Optional[str] = None
    status: Optional[str] = None
    effective_status: Optional[str] = None
    creative: Optional[Dict[str, Any]] = None
    created_time: Optional[str] = None
    updated_time: Optional[str] = None


class AdCreative(MetaResource):
    kind: Literal["ad_creative"] = "ad_creative"
    name: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    image_url: Optional[str] = None
    video_id: Optional[str] = None
    call_to_action: Optional[Dict[str, Any]] = None
    object_story_spec: Optional[Dict[str, Any]] = None


class AdInsights(MetaResource):
    kind: Literal["ad_insights"] = "ad_insights"
    date_start: Optional[str] = None
    date_stop: Optional[str] = None
    impressions: Optional[str] = None
    clicks: Optional[str] = None
    spend: Optional[str] = None
    reach: Optional[str] = None
    frequency: Optional[str] = None
    ctr: Optional[str] = None
    cpc: Optional[str] = None
    cpm: Optional[str] = None
    actions: Optional[List[Dict[str, Any]]] = None
    cost_per_action_type: Optional[List[Dict[str, Any]]] = None


class CustomAudience(MetaResource):
    kind: Literal["custom_audience"] = "custom_audience"
    name: Optional[str] = None
    description: Optional[str] = None
    subtype: Optional[str] = None
    approximate_count: Optional[int] = None
    retention_days: Optional[int] = None
    data_source: Optional[Dict[str, Any]] = None
    operation_status: Optional[Dict[str, Any]] = None
    creation_time: Optional[int] = None


# Opaque JSON passthrough for shapes not modeled above
OpaqueResource = Dict[str, Any]

TypedResource = Union[AdAccount, Campaign, AdSet, Ad, AdCreative, AdInsights, CustomAudience]

RESOURCE_MODELS: Dict[str, Type[MetaResource]] = {
    "ad_account": AdAccount,
    "campaign": Campaign,
    "ad_set": AdSet,
    "ad": Ad,
    "ad_creative": AdCreative,
    "ad_insights": AdInsights,
    "custom_audience": CustomAudience,
}


def parse_resource(kind: str, data: Dict[str, Any]) -> Union[TypedResource, OpaqueResource]:
    """Validate `data` as the named resource kind; unknown kinds pass through as dicts."""
    model = RESOURCE_MODELS.get(kind)
    if model is None:
        return dict(data)
    return model.model_validate(data)


# =============================================================================
# SESSIONS & TOKENS
# =============================================================================


class UserSession(BaseModel):
    """This system's login record for one user (stored in the KV store)."""

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    meta_user_id: str
    created_at: datetime = Field(default_factory=utcnow)
    last_used: datetime = Field(default_factory=utcnow)


class UserTokenData(BaseModel):
    """Provider OAuth credentials for one user.

    Held only by the session manager; tool handlers never see these fields.
    """

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    scope: Set[str] = Field(default_factory=set)
    issued_at: datetime = Field(default_factory=utcnow)

    @property
    def expires_at(self) -> Optional[datetime]:
        if not self.expires_in:
            return None
        return datetime.fromtimestamp(self.issued_at.timestamp() + self.expires_in, tz=timezone.utc)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return (now or utcnow()) >= expires_at


class MetaUserInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    email: Optional[str] = None


# =============================================================================
# HTTP RESPONSES
# =============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(description="Error message")


class UserOut(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    meta_user_id: str


class LoginResponse(BaseModel):
    success: bool = True
    auth_url: str
    message: str = "Redirect user to this URL to begin OAuth flow"


class CallbackResponse(BaseModel):
    success: bool = True
    user: UserOut
    session_token: str
    message: str = "Authentication successful."


class TokenStatus(BaseModel):
    has_token: bool
    expires_at: Optional[datetime] = None
    is_expired: bool = False


class ProfileResponse(BaseModel):
    success: bool = True
    user: UserOut
    created_at: datetime
    last_used: datetime
    token_status: TokenStatus


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")
    tier: str = Field(description="Configured Meta API access tier")
    version: str

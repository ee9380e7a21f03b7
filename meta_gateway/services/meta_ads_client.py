"""Meta Marketing API client (orchestrator).

WHAT:
    Every logical operation goes through `make_request`, which:
      1. asks the user's MetaAuthManager for a valid token (lazy refresh)
      2. runs the RateLimiter admission check when an account id is known
      3. dispatches the HTTP call inside retry_with_backoff
    List operations then hand the body to parse_paginated_response.

WHY:
    - Tool handlers sit above this class and only see typed resources,
      PaginatedResult pages, BatchResult aggregates, or MetaAdsClientError
    - The limiter is injected, so each test (and each process) owns its own
      usage windows
    - Calls without a resolvable account id (bare object ids) skip the
      limiter; some endpoints are not account-scoped

IDEMPOTENCE CONTRACT:
    POST/DELETE calls are retried under the assumption that the Graph API is
    idempotent per resource id for create/update/delete. See services/retry.py.

REFERENCES:
    - services/rate_limiter.py
    - services/retry.py
    - services/pagination.py
    - services/auth_manager.py
    - https://developers.facebook.com/docs/marketing-apis
"""

import json
import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from ..exceptions import MetaAdsAuthenticationError, MetaAdsClientError, MetaAdsValidationError
from ..schemas import (
    Ad,
    AdAccount,
    AdCreative,
    AdInsights,
    AdSet,
    Campaign,
    CustomAudience,
    MetaResource,
    parse_resource,
)
from .auth_manager import MetaAuthManager
from .error_handler import send_request
from .pagination import (
    BatchResult,
    PaginatedResult,
    PaginationParams,
    build_page_info,
    build_pagination_params,
    parse_paginated_response,
    process_batches,
)
from .rate_limiter import RateLimiter
from .retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

# Custom audience uploads accept at most this many rows per request
AUDIENCE_UPLOAD_BATCH_SIZE = 10000

AD_ACCOUNT_FIELDS = "id,name,account_id,account_status,balance,currency,timezone_name,business"
CAMPAIGN_FIELDS = (
    "id,name,objective,status,effective_status,created_time,updated_time,"
    "start_time,stop_time,budget_remaining,daily_budget,lifetime_budget"
)
CAMPAIGN_DETAIL_FIELDS = CAMPAIGN_FIELDS + ",account_id"
AD_SET_FIELDS = (
    "id,name,campaign_id,status,effective_status,created_time,updated_time,start_time,"
    "end_time,daily_budget,lifetime_budget,bid_amount,billing_event,optimization_goal"
)
AD_FIELDS = "id,name,adset_id,campaign_id,status,effective_status,created_time,updated_time,creative"
INSIGHTS_FIELDS = "impressions,clicks,spend,reach,frequency,ctr,cpc,cpm,actions,cost_per_action_type"
AUDIENCE_FIELDS = (
    "id,name,description,subtype,approximate_count,data_source,retention_days,"
    "creation_time,operation_status"
)
CREATIVE_FIELDS = "id,name,title,body,image_url,video_id,call_to_action,object_story_spec"

# Operations whose parent can come from params instead of target_id
TARGETLESS_OPERATIONS = frozenset({"get_ad_accounts", "batch_request", "list_ad_sets", "list_ads"})


def encode_param(value: Any) -> str:
    """Graph API query/form convention: arrays and objects travel as JSON."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set, dict)):
        return json.dumps(list(value) if isinstance(value, (tuple, set)) else value)
    return str(value)


def build_query_params(params: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Drop None values and stringify the rest."""
    if not params:
        return {}
    return {key: encode_param(value) for key, value in params.items() if value is not None}


def resolve_account_id(target_id: Optional[str]) -> Optional[str]:
    """Account id for rate limiting, when it can be read off the id itself.

    `act_<n>` ids are accounts. Bare numeric ids (campaigns, ad sets, ads,
    creatives) carry no account information.
    """
    if target_id and target_id.startswith("act_"):
        return target_id
    return None


def _fields(fields: Optional[Sequence[str]], default: str) -> str:
    return ",".join(fields) if fields else default


def _page(limit: Optional[int], after: Optional[str], before: Optional[str]) -> Dict[str, str]:
    return build_pagination_params(PaginationParams(limit=limit, after=after, before=before))


class MetaApiClient:
    """Resilient access to the Graph API for one user.

    Usage:
        ```python
        client = MetaApiClient(auth, rate_limiter)
        page = await client.get_campaigns("act_123", limit=25)
        if page.has_next_page:
            page = await client.get_campaigns("act_123", limit=25, after=page.cursor_after)
        ```
    """

    def __init__(
        self,
        auth: MetaAuthManager,
        rate_limiter: RateLimiter,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.auth = auth
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.http_client = http_client
        self.timeout = timeout

    # --- Core dispatch --------------------------------------------------

    async def make_request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        account_id: Optional[str] = None,
    ) -> Any:
        """Dispatch one Graph API call through auth, rate limiting and retry.

        Args:
            endpoint: Path below the versioned base URL ("" for the batch root)
            method: GET, POST or DELETE; anything but GET is a write
            params: Query parameters
            body: Form fields for POST/DELETE
            account_id: `act_` id for the rate limiter; None skips admission

        Raises:
            MetaAdsClientError subclass after retries are exhausted or on a
            fatal error.
        """
        method = method.upper()
        await self.auth.refresh_token_if_needed()

        if account_id:
            await self.rate_limiter.check_rate_limit(account_id, is_write_call=method != "GET")

        url = self.auth.graph_url(endpoint)
        query = build_query_params(params)
        proof = self.auth.appsecret_proof
        if proof:
            query["appsecret_proof"] = proof
        form = build_query_params(body) if method != "GET" else {}
        label = f"{method} {endpoint or '/'}"

        async def _call():
            kwargs: Dict[str, Any] = {"headers": self.auth.get_auth_headers()}
            if query:
                kwargs["params"] = query
            if form:
                kwargs["data"] = form
            return await send_request(method, url, client=self.http_client, timeout=self.timeout, **kwargs)

        return await retry_with_backoff(_call, label=label, policy=self.retry_policy)

    async def _list(
        self,
        endpoint: str,
        kind: str,
        params: Dict[str, Any],
        account_id: Optional[str],
    ) -> PaginatedResult[Any]:
        raw = await self.make_request(endpoint, "GET", params=params, account_id=account_id)
        if not isinstance(raw, dict):
            raise MetaAdsClientError(f"Unexpected list response from {endpoint}")
        return parse_paginated_response(raw, lambda row: parse_resource(kind, row))

    def _account(self, account_id: Optional[str]) -> Optional[str]:
        return self.auth.get_account_id(account_id) if account_id else None

    # --- Accounts -------------------------------------------------------

    async def get_ad_accounts(
        self,
        *,
        fields: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
        before: Optional[str] = None,
    ) -> PaginatedResult[AdAccount]:
        """Ad accounts the user can access. Not account-scoped, so not budgeted."""
        params = {"fields": _fields(fields, AD_ACCOUNT_FIELDS), **_page(limit, after, before)}
        return await self._list("me/adaccounts", "ad_account", params, None)

    async def get_ad_account(self, account_id: str) -> AdAccount:
        account = self.auth.get_account_id(account_id)
        raw = await self.make_request(account, params={"fields": AD_ACCOUNT_FIELDS}, account_id=account)
        return AdAccount.model_validate(raw)

    # --- Campaigns ------------------------------------------------------

    async def get_campaigns(
        self,
        account_id: str,
        *,
        status: Optional[str] = None,
        fields: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
        before: Optional[str] = None,
    ) -> PaginatedResult[Campaign]:
        account = self.auth.get_account_id(account_id)
        params: Dict[str, Any] = {"fields": _fields(fields, CAMPAIGN_FIELDS), **_page(limit, after, before)}
        if status:
            params["effective_status"] = [status]
        return await self._list(f"{account}/campaigns", "campaign", params, account)

    async def get_campaign(self, campaign_id: str) -> Campaign:
        raw = await self.make_request(campaign_id, params={"fields": CAMPAIGN_DETAIL_FIELDS})
        return Campaign.model_validate(raw)

    async def create_campaign(self, account_id: str, campaign_data: Dict[str, Any]) -> Dict[str, Any]:
        account = self.auth.get_account_id(account_id)
        return await self.make_request(f"{account}/campaigns", "POST", body=campaign_data, account_id=account)

    async def update_campaign(
        self, campaign_id: str, updates: Dict[str, Any], account_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.make_request(campaign_id, "POST", body=updates, account_id=self._account(account_id))

    async def delete_campaign(self, campaign_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.make_request(campaign_id, "DELETE", account_id=self._account(account_id))

    # --- Ad sets & ads --------------------------------------------------

    async def get_ad_sets(
        self,
        *,
        campaign_id: Optional[str] = None,
        account_id: Optional[str] = None,
        status: Optional[str] = None,
        fields: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
        before: Optional[str] = None,
    ) -> PaginatedResult[AdSet]:
        account = self._account(account_id)
        if campaign_id:
            endpoint = f"{campaign_id}/adsets"
        elif account:
            endpoint = f"{account}/adsets"
        else:
            raise MetaAdsValidationError("Either campaign_id or account_id must be provided")

        params: Dict[str, Any] = {"fields": _fields(fields, AD_SET_FIELDS), **_page(limit, after, before)}
        if status:
            params["effective_status"] = [status]
        return await self._list(endpoint, "ad_set", params, account)

    async def create_ad_set(self, campaign_id: str, ad_set_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create an ad set under `campaign_id`.

        The owning account is looked up from the campaign so the write is
        charged to the right tenant.
        """
        campaign = await self.get_campaign(campaign_id)
        if not campaign.account_id:
            raise MetaAdsValidationError("Unable to determine account ID from campaign")

        account = self.auth.get_account_id(campaign.account_id)
        payload = {**ad_set_data, "campaign_id": campaign_id}
        try:
            result = await self.make_request(f"{account}/adsets", "POST", body=payload, account_id=account)
        except MetaAdsClientError as e:
            logger.error(
                f"[META_CLIENT] Ad set creation failed for campaign {campaign_id}: "
                f"code={e.error_code} subcode={e.error_subcode} fbtrace_id={e.fbtrace_id} message={e.message}"
            )
            raise
        logger.info(f"[META_CLIENT] Created ad set {result.get('id')} in {account}")
        return result

    async def get_ads(
        self,
        *,
        adset_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        account_id: Optional[str] = None,
        status: Optional[str] = None,
        fields: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
        before: Optional[str] = None,
    ) -> PaginatedResult[Ad]:
        account = self._account(account_id)
        if adset_id:
            endpoint = f"{adset_id}/ads"
        elif campaign_id:
            endpoint = f"{campaign_id}/ads"
        elif account:
            endpoint = f"{account}/ads"
        else:
            raise MetaAdsValidationError("Either adset_id, campaign_id, or account_id must be provided")

        params: Dict[str, Any] = {"fields": _fields(fields, AD_FIELDS), **_page(limit, after, before)}
        if status:
            params["effective_status"] = [status]
        return await self._list(endpoint, "ad", params, account)

    # --- Insights -------------------------------------------------------

    async def get_insights(
        self,
        object_id: str,
        *,
        level: Optional[str] = None,
        date_preset: Optional[str] = None,
        time_range: Optional[Dict[str, str]] = None,
        fields: Optional[Sequence[str]] = None,
        breakdowns: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
    ) -> PaginatedResult[AdInsights]:
        params: Dict[str, Any] = {
            "fields": _fields(fields, INSIGHTS_FIELDS),
            "level": level,
            "date_preset": date_preset,
            "time_range": time_range,
            "breakdowns": list(breakdowns) if breakdowns else None,
            **_page(limit, after, None),
        }
        return await self._list(f"{object_id}/insights", "ad_insights", params, resolve_account_id(object_id))

    # --- Audiences ------------------------------------------------------

    async def get_custom_audiences(
        self,
        account_id: str,
        *,
        fields: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
        before: Optional[str] = None,
    ) -> PaginatedResult[CustomAudience]:
        account = self.auth.get_account_id(account_id)
        params = {"fields": _fields(fields, AUDIENCE_FIELDS), **_page(limit, after, before)}
        return await self._list(f"{account}/customaudiences", "custom_audience", params, account)

    async def create_custom_audience(self, account_id: str, audience_data: Dict[str, Any]) -> Dict[str, Any]:
        account = self.auth.get_account_id(account_id)
        return await self.make_request(
            f"{account}/customaudiences", "POST", body=audience_data, account_id=account
        )

    async def create_lookalike_audience(
        self,
        account_id: str,
        *,
        name: str,
        origin_audience_id: str,
        country: str,
        ratio: float,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        account = self.auth.get_account_id(account_id)
        body = {
            "name": name,
            "origin_audience_id": origin_audience_id,
            "description": description,
            "subtype": "LOOKALIKE",
            "lookalike_spec": {"ratio": ratio, "country": country, "type": "similarity"},
        }
        return await self.make_request(f"{account}/customaudiences", "POST", body=body, account_id=account)

    async def add_users_to_audience(
        self,
        audience_id: str,
        schema: Sequence[str],
        rows: Sequence[Any],
        *,
        account_id: Optional[str] = None,
        batch_size: int = AUDIENCE_UPLOAD_BATCH_SIZE,
        delay: float = 0.0,
    ) -> BatchResult[Dict[str, Any]]:
        """Upload hashed audience members in provider-sized chunks.

        Chunks go out one after another under a shared upload session. A
        failed chunk is counted and the rest still upload; the counts in the
        result are rows, not chunks.
        """
        if not rows:
            return BatchResult()

        account = self._account(account_id)
        session_id = secrets.randbelow(2**53)
        total_batches = (len(rows) + batch_size - 1) // batch_size
        sequence = {"n": 0}

        async def _upload(chunk: List[Any]) -> Dict[str, Any]:
            sequence["n"] += 1
            body = {
                "payload": {"schema": list(schema), "data": chunk},
                "session": {
                    "session_id": session_id,
                    "batch_seq": sequence["n"],
                    "last_batch_flag": sequence["n"] == total_batches,
                    "estimated_num_total": len(rows),
                },
            }
            return await self.make_request(f"{audience_id}/users", "POST", body=body, account_id=account)

        return await process_batches(rows, _upload, batch_size=batch_size, delay=delay, label="audience upload")

    # --- Creatives ------------------------------------------------------

    async def get_ad_creatives(
        self,
        account_id: str,
        *,
        fields: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        after: Optional[str] = None,
        before: Optional[str] = None,
    ) -> PaginatedResult[AdCreative]:
        account = self.auth.get_account_id(account_id)
        params = {"fields": _fields(fields, CREATIVE_FIELDS), **_page(limit, after, before)}
        return await self._list(f"{account}/adcreatives", "ad_creative", params, account)

    async def create_ad_creative(self, account_id: str, creative_data: Dict[str, Any]) -> Dict[str, Any]:
        account = self.auth.get_account_id(account_id)
        return await self.make_request(f"{account}/adcreatives", "POST", body=creative_data, account_id=account)

    async def create_ad_creatives_batch(
        self,
        account_id: str,
        creatives: Sequence[Dict[str, Any]],
        delay: float = 0.0,
    ) -> BatchResult[Dict[str, Any]]:
        """Create several creatives, one request each; failures do not stop the rest."""

        async def _create(chunk: List[Dict[str, Any]]) -> Dict[str, Any]:
            return await self.create_ad_creative(account_id, chunk[0])

        return await process_batches(creatives, _create, batch_size=1, delay=delay, label="creative")

    # --- Utilities ------------------------------------------------------

    async def batch_request(self, requests: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Graph batch API: up to 50 relative requests in one POST."""
        return await self.make_request("", "POST", body={"batch": list(requests)})

    async def estimate_audience_size(
        self, account_id: str, targeting: Dict[str, Any], optimization_goal: str
    ) -> Dict[str, Any]:
        account = self.auth.get_account_id(account_id)
        return await self.make_request(
            f"{account}/delivery_estimate",
            params={"targeting_spec": targeting, "optimization_goal": optimization_goal},
            account_id=account,
        )

    async def generate_ad_preview(
        self, creative_id: str, ad_format: str, product_item_ids: Optional[Sequence[str]] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"ad_format": ad_format}
        if product_item_ids:
            params["product_item_ids"] = list(product_item_ids)
        return await self.make_request(f"{creative_id}/previews", params=params)

    # --- Tool-call entry point ------------------------------------------

    def _operations(self) -> Dict[str, Callable[[Optional[str], Dict[str, Any]], Awaitable[Any]]]:
        def _ads(target: Optional[str], p: Dict[str, Any]):
            if resolve_account_id(target):
                return self.get_ads(account_id=target, **p)
            if target and "campaign_id" not in p and "adset_id" not in p:
                p["adset_id"] = target
            return self.get_ads(**p)

        def _ad_sets(target: Optional[str], p: Dict[str, Any]):
            if resolve_account_id(target):
                return self.get_ad_sets(account_id=target, **p)
            if target:
                return self.get_ad_sets(campaign_id=target, **p)
            return self.get_ad_sets(**p)

        return {
            "get_ad_accounts": lambda t, p: self.get_ad_accounts(**p),
            "get_ad_account": lambda t, p: self.get_ad_account(t),
            "list_campaigns": lambda t, p: self.get_campaigns(t, **p),
            "get_campaign": lambda t, p: self.get_campaign(t),
            "create_campaign": lambda t, p: self.create_campaign(t, p),
            "update_campaign": lambda t, p: self.update_campaign(t, p),
            "delete_campaign": lambda t, p: self.delete_campaign(t),
            "list_ad_sets": _ad_sets,
            "create_ad_set": lambda t, p: self.create_ad_set(t, p),
            "list_ads": _ads,
            "get_insights": lambda t, p: self.get_insights(t, **p),
            "list_audiences": lambda t, p: self.get_custom_audiences(t, **p),
            "create_custom_audience": lambda t, p: self.create_custom_audience(t, p),
            "create_lookalike_audience": lambda t, p: self.create_lookalike_audience(t, **p),
            "add_users_to_audience": lambda t, p: self.add_users_to_audience(
                t, p["schema"], p["data"], account_id=p.get("account_id")
            ),
            "list_creatives": lambda t, p: self.get_ad_creatives(t, **p),
            "create_ad_creative": lambda t, p: self.create_ad_creative(t, p),
            "create_ad_creatives_batch": lambda t, p: self.create_ad_creatives_batch(t, p["creatives"]),
            "batch_request": lambda t, p: self.batch_request(p["requests"]),
            "estimate_audience_size": lambda t, p: self.estimate_audience_size(
                t, p["targeting"], p["optimization_goal"]
            ),
            "generate_ad_preview": lambda t, p: self.generate_ad_preview(
                t, p["ad_format"], p.get("product_item_ids")
            ),
        }

    @property
    def operation_names(self) -> List[str]:
        return sorted(self._operations())

    async def invoke(
        self,
        operation_name: str,
        target_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Run a named operation and return a JSON-ready payload.

        Raises:
            MetaAdsValidationError: Unknown operation or bad parameters
            MetaAdsClientError: Provider failure
        """
        handler = self._operations().get(operation_name)
        if handler is None:
            raise MetaAdsValidationError(f"Unknown operation: {operation_name}")

        if target_id is not None and not isinstance(target_id, str):
            raise MetaAdsValidationError(f"target_id for {operation_name} must be a string")
        if not target_id and operation_name not in TARGETLESS_OPERATIONS:
            raise MetaAdsValidationError(f"{operation_name} requires a target_id")

        try:
            pending = handler(target_id, dict(params or {}))
        except (KeyError, TypeError) as e:
            raise MetaAdsValidationError(f"Missing or invalid parameter for {operation_name}: {e}") from e

        result = await pending
        logger.info(f"[META_CLIENT] {operation_name} completed for target={target_id}")
        return to_payload(result)


def to_payload(result: Any) -> Any:
    """Typed results -> plain JSON structures."""
    if isinstance(result, MetaResource):
        return result.to_dict()
    if isinstance(result, PaginatedResult):
        return {"data": [to_payload(row) for row in result.data], "paging": build_page_info(result)}
    if isinstance(result, BatchResult):
        payload = result.to_dict()
        payload["results"] = [to_payload(r) for r in result.results]
        return payload
    if isinstance(result, list):
        return [to_payload(item) for item in result]
    return result


async def client_for_session(
    session_token: Optional[str],
    user_auth_manager,
    rate_limiter: RateLimiter,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> MetaApiClient:
    """Verify an inbound session token and build that user's client.

    Every rejection reason surfaces as the same authentication error.
    """
    user_id = await user_auth_manager.verify_session_token(session_token)
    session = await user_auth_manager.get_user_session(user_id) if user_id else None
    if session is None:
        raise MetaAdsAuthenticationError("Invalid or expired session. Please log in again.")

    auth = await user_auth_manager.create_user_auth_manager(user_id)
    if auth is None:
        raise MetaAdsAuthenticationError("No Meta credentials on file. Please re-authenticate.")

    return MetaApiClient(
        auth,
        rate_limiter,
        retry_policy=retry_policy or user_auth_manager.retry_policy,
        http_client=http_client or user_auth_manager.http_client,
        timeout=user_auth_manager.settings.HTTP_TIMEOUT_SECONDS,
    )

"""
Pipedrive Proxy Integration
============================

Client for the ``pipedrive-proxy`` Supabase edge function, the single
boundary through which Funnel Hub reads CRM data.

Every call POSTs ``{action, pipeline_id, start_date?, end_date?, force?,
view_mode?, stage_id?}`` and receives ``{success, data?, error?}``.

Setup:
1. Set SUPABASE_URL and SUPABASE_ANON_KEY in .env
2. Deploy the pipedrive-proxy function with PIPEDRIVE_API_KEY configured
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from models.funnel_models import (
    CampaignTrackingData,
    DateRange,
    FunnelData,
    LeadSourceData,
    ProxyAction,
    ProxyRequest,
    ProxyResponse,
    SectorDistributionData,
    SQLCallMetrics,
    StageDeal,
    ViewMode,
)
from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.lib.config import get_settings
from scripts.lib.errors import (
    APIAuthError,
    APIError,
    APIRateLimitError,
    APITimeoutError,
    ConfigError,
    CRMProxyError,
    SchemaValidationError,
)
from scripts.lib.logger import setup_logger

logger = setup_logger("pipedrive_proxy")

GENERIC_ERROR = "Erro ao buscar dados do Pipedrive"
SERVICE_NAME = "pipedrive-proxy"

ModelT = TypeVar("ModelT", bound=BaseModel)

TRACKING_ACTIONS = {
    # kind -> (period action, snapshot action, payload model)
    "campaign": (
        ProxyAction.GET_CAMPAIGN_TRACKING,
        ProxyAction.GET_CAMPAIGN_TRACKING_SNAPSHOT,
        CampaignTrackingData,
    ),
    "source": (
        ProxyAction.GET_LEAD_SOURCE_TRACKING,
        ProxyAction.GET_LEAD_SOURCE_TRACKING_SNAPSHOT,
        LeadSourceData,
    ),
    "sector": (
        ProxyAction.GET_SECTOR_TRACKING,
        ProxyAction.GET_SECTOR_TRACKING_SNAPSHOT,
        SectorDistributionData,
    ),
}


class _UpstreamServerError(Exception):
    """5xx from the edge function; retried."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP {status_code}: {body[:200]}")


class PipedriveProxyClient:
    """
    Async client for the pipedrive-proxy edge function.

    Transport failures (timeouts, connection errors, 5xx) are retried with
    exponential backoff and counted by a circuit breaker. An envelope with
    ``success=false`` raises CRMProxyError carrying the upstream message.
    """

    def __init__(
        self,
        url: str = None,
        api_key: str = None,
        timeout: float = None,
        max_attempts: int = 3,
        retry_wait: Callable = None,
        transport: httpx.AsyncBaseTransport = None,
        breaker: CircuitBreaker = None,
    ):
        settings = get_settings()
        self.url = url or (settings.proxy_url if settings.supabase_url else "")
        self.api_key = api_key if api_key is not None else settings.supabase_anon_key
        self.timeout = timeout or settings.request_timeout
        self.max_attempts = max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=8)
        self._transport = transport
        self._breaker = breaker or CircuitBreaker.get(SERVICE_NAME)

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "apikey": self.api_key,
            "Content-Type": "application/json",
        }

    async def _send(self, body: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, headers=self._headers(), json=body)

        if response.status_code >= 500:
            raise _UpstreamServerError(response.status_code, response.text)
        return response

    async def _post(self, body: Dict[str, Any]) -> httpx.Response:
        """POST with retries; transport failures surface as APIError subclasses."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception_type((httpx.TransportError, _UpstreamServerError)),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "Retrying %s (attempt %d/%d)",
                            body.get("action"), attempt.retry_state.attempt_number,
                            self.max_attempts,
                        )
                    response = await self._send(body)
        except httpx.TimeoutException as e:
            raise APITimeoutError(self.url, self.timeout) from e
        except httpx.TransportError as e:
            raise APIError(f"Connection to CRM proxy failed: {e}", url=self.url) from e
        except _UpstreamServerError as e:
            raise APIError(
                f"CRM proxy returned {e.status_code}", status_code=e.status_code, url=self.url,
            ) from e
        return response

    async def invoke(self, request: ProxyRequest) -> ProxyResponse:
        """
        Call the proxy and return a successful envelope.

        Raises:
            ConfigError: SUPABASE_URL / SUPABASE_ANON_KEY missing.
            APIError: transport failure, auth failure, rate limit or open circuit.
            CRMProxyError: the proxy answered success=false.
            SchemaValidationError: the body is not a valid envelope.
        """
        if not self.is_configured:
            raise ConfigError("CRM proxy is not configured: set SUPABASE_URL and SUPABASE_ANON_KEY in .env")

        body = request.to_body()
        logger.debug("POST %s %s", self.url, body)

        async with self._breaker.guard(APIError):
            response = await self._post(body)
            if response.status_code in (401, 403):
                raise APIAuthError(self.url, status_code=response.status_code)
            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After")
                raise APIRateLimitError(
                    self.url, retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                )

        # The proxy answers failures with HTTP 400 and a JSON envelope
        try:
            envelope = ProxyResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise SchemaValidationError(
                f"Unexpected response from CRM proxy (HTTP {response.status_code})",
            ) from e

        if not envelope.success:
            logger.error("CRM proxy %s failed: %s", request.action.value, envelope.error)
            raise CRMProxyError(
                envelope.error or GENERIC_ERROR,
                action=request.action.value,
                status_code=response.status_code,
            )

        logger.info("CRM proxy %s ok (pipeline %d)", request.action.value, request.pipeline_id)
        return envelope

    # ─── Typed helpers ────────────────────────────────────────

    @staticmethod
    def _parse(model: Type[ModelT], data: Any, action: ProxyAction) -> Optional[ModelT]:
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise SchemaValidationError(
                f"Invalid {action.value} payload: {e.error_count()} errors",
                field=action.value,
            ) from e

    async def get_funnel_data(
        self, pipeline_id: int, window: DateRange, force: bool = False,
    ) -> Optional[FunnelData]:
        request = ProxyRequest(
            action=ProxyAction.GET_FUNNEL_DATA,
            pipeline_id=pipeline_id,
            force=force,
            **window.to_params(),
        )
        envelope = await self.invoke(request)
        return self._parse(FunnelData, envelope.data, request.action)

    async def get_tracking(
        self,
        kind: str,
        pipeline_id: int,
        window: Optional[DateRange] = None,
        force: bool = False,
    ) -> Optional[BaseModel]:
        """Breakdown payload for ``kind`` (campaign, source, sector); snapshot when no window."""
        if kind not in TRACKING_ACTIONS:
            raise ValueError(f"Unknown tracking kind: {kind}")
        period_action, snapshot_action, model = TRACKING_ACTIONS[kind]

        params = window.to_params() if window is not None else {}
        request = ProxyRequest(
            action=period_action if window is not None else snapshot_action,
            pipeline_id=pipeline_id,
            force=force,
            **params,
        )
        envelope = await self.invoke(request)
        return self._parse(model, envelope.data, request.action)

    async def get_campaign_tracking(
        self, pipeline_id: int, window: Optional[DateRange] = None, force: bool = False,
    ) -> Optional[CampaignTrackingData]:
        return await self.get_tracking("campaign", pipeline_id, window, force)

    async def get_lead_source_tracking(
        self, pipeline_id: int, window: Optional[DateRange] = None, force: bool = False,
    ) -> Optional[LeadSourceData]:
        return await self.get_tracking("source", pipeline_id, window, force)

    async def get_sector_tracking(
        self, pipeline_id: int, window: Optional[DateRange] = None, force: bool = False,
    ) -> Optional[SectorDistributionData]:
        return await self.get_tracking("sector", pipeline_id, window, force)

    async def get_sql_call_metrics(
        self, pipeline_id: int, view_mode: ViewMode = ViewMode.PERIOD, force: bool = False,
    ) -> Optional[SQLCallMetrics]:
        request = ProxyRequest(
            action=ProxyAction.GET_SQL_CALL_METRICS,
            pipeline_id=pipeline_id,
            force=force,
            view_mode=view_mode,
        )
        envelope = await self.invoke(request)
        return self._parse(SQLCallMetrics, envelope.data, request.action)

    async def get_stage_deals(
        self,
        pipeline_id: int,
        stage_id: int,
        view_mode: ViewMode = ViewMode.SNAPSHOT,
        window: Optional[DateRange] = None,
        force: bool = False,
    ) -> List[StageDeal]:
        params = window.to_params() if window is not None else {}
        request = ProxyRequest(
            action=ProxyAction.GET_STAGE_DEALS,
            pipeline_id=pipeline_id,
            force=force,
            stage_id=stage_id,
            view_mode=view_mode,
            **params,
        )
        envelope = await self.invoke(request)
        return [
            self._parse(StageDeal, row, request.action)
            for row in (envelope.data or [])
        ]

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": "Pipedrive proxy",
            "configured": self.is_configured,
            "circuit": self._breaker.status(),
        }

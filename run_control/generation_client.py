"""HTTP client for the generation API.

Implements the PlanService and Executor protocols of the state machine over
httpx. Transport failures surface as ConnectivityError; a rejected plan
request surfaces as PlanningError carrying the server's detail.
"""

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from .config import get_settings
from .errors import ConnectivityError, PlanNotFoundError, PlanningError, RunControlError, ValidationError
from .models import PlanInfo
from .schemas import ExecuteRequest, ExecuteResponse, PlanInfoModel, PlanRequest, parse_event

logger = logging.getLogger(__name__)


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return resp.text


class GenerationClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cfg = get_settings()
        self._client = httpx.AsyncClient(
            base_url=base_url or cfg.GENERATION_API_URL,
            timeout=timeout if timeout is not None else cfg.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GenerationClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def create_plan(self, request: PlanRequest) -> PlanInfo:
        try:
            resp = await self._client.post("/generate/plan", json=request.model_dump(mode="json", exclude_none=True))
        except httpx.RequestError as e:
            raise ConnectivityError(f"Plan service unreachable: {e}") from e
        if resp.status_code >= 400:
            raise PlanningError(f"Request failed ({resp.status_code}): {_detail(resp)}")
        return PlanInfoModel.model_validate(resp.json()).to_domain()

    async def start_execution(self, request: ExecuteRequest) -> str:
        try:
            resp = await self._client.post("/generate/execute", json=request.model_dump(mode="json", exclude_none=True))
        except httpx.RequestError as e:
            raise ConnectivityError(f"Executor unreachable: {e}") from e
        if resp.status_code == 404:
            raise PlanNotFoundError(_detail(resp))
        if resp.status_code == 400:
            raise ValidationError(_detail(resp))
        if resp.status_code >= 400:
            raise RunControlError(f"Request failed ({resp.status_code}): {_detail(resp)}")
        return ExecuteResponse.model_validate(resp.json()).job_id

    async def stream_events(self, run_id: str) -> AsyncIterator[Any]:
        """Yield parsed events from the job's Server-Sent Events stream.

        Execution has no overall timeout, so reads wait indefinitely; the
        server's keep-alive comments hold the connection open.
        """
        url = f"/generate/jobs/{run_id}/stream"
        data_lines = []
        try:
            async with self._client.stream("GET", url, timeout=httpx.Timeout(None, connect=get_settings().HTTP_TIMEOUT_SECONDS)) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise ConnectivityError(f"Stream request failed ({resp.status_code}): {_detail(resp)}")
                async for line in resp.aiter_lines():
                    if not line:
                        if data_lines:
                            yield parse_event("\n".join(data_lines))
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    if line.startswith("data:"):
                        data_lines.append(line[5:].lstrip())
                if data_lines:
                    yield parse_event("\n".join(data_lines))
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Execution stream broken: {e}") from e

    async def cancel(self, run_id: str) -> None:
        try:
            resp = await self._client.post(f"/generate/jobs/{run_id}/cancel")
        except httpx.RequestError as e:
            raise ConnectivityError(f"Cancel request failed: {e}") from e
        if resp.status_code >= 400:
            raise RunControlError(f"Cancel failed ({resp.status_code}): {_detail(resp)}")
        logger.info("cancel requested for run %s", run_id)

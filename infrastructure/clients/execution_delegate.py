# infrastructure/clients/execution_delegate.py
import uuid
from typing import Any, Dict, List, Optional, Protocol

import httpx

from domain.errors import UpstreamError
from domain.models.work_item import DelegateTaskSpec
from infrastructure.clients.http_errors import check_response, upstream_from_transport
from infrastructure.resilience.circuit_breaker import CircuitBreaker
from shared.logging import logger


class ExecutionDelegate(Protocol):
    """The external agent service that performs delegated work"""

    async def create_task(self, spec: DelegateTaskSpec) -> str: ...

    async def cancel_task(self, delegate_task_id: str) -> None: ...


def task_payload(org_id: str, spec: DelegateTaskSpec) -> Dict[str, Any]:
    metadata = {
        "session_id": spec.session_id,
        "issue_id": spec.issue_id,
        "strategy": spec.strategy.value,
        "require_review": spec.require_review,
    }
    if spec.callback_url:
        metadata["callback_url"] = spec.callback_url

    return {
        "org_id": org_id,
        "prompt": spec.prompt,
        "branch": spec.branch_name,
        "labels": list(spec.labels),
        "auto_merge": spec.auto_merge,
        "priority": spec.priority.value,
        "timeout": spec.timeout_seconds,
        "create_pr": spec.create_pr,
        "metadata": metadata,
    }


class CodegenExecutionDelegate:
    """REST client for a Codegen-style task API"""

    service = "execution_delegate"

    def __init__(self, api_token: str, org_id: str,
                 base_url: str = "https://api.codegen.com",
                 breaker: Optional[CircuitBreaker] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0):
        self.api_token = api_token
        self.org_id = org_id
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def create_task(self, spec: DelegateTaskSpec) -> str:
        logger.info("Creating delegate task",
                    session_id=spec.session_id,
                    issue_id=spec.issue_id,
                    branch=spec.branch_name,
                    prompt_length=len(spec.prompt))

        body = await self._call("/v1/tasks", task_payload(self.org_id, spec))
        task_id = body.get("id") or body.get("task_id")
        if not task_id:
            raise UpstreamError(f"{self.service} response carried no task id", transient=False)

        logger.info("Delegate task created", session_id=spec.session_id,
                    delegate_task_id=str(task_id), status=body.get("status"))
        return str(task_id)

    async def cancel_task(self, delegate_task_id: str) -> None:
        await self._call(f"/v1/tasks/{delegate_task_id}/cancel", None)
        logger.info("Delegate task cancelled", delegate_task_id=delegate_task_id)

    async def _call(self, path: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if self.breaker is not None:
            return await self.breaker.call(self._post, path, payload)
        return await self._post(path, payload)

    async def _post(self, path: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            response = await self._get_client().post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_token}"},
            )
        except httpx.HTTPError as e:
            raise upstream_from_transport(self.service, e) from e
        return check_response(self.service, response)


class DryRunExecutionDelegate:
    """Accepts every task without contacting an external service"""

    def __init__(self):
        self.created: List[DelegateTaskSpec] = []
        self.cancelled: List[str] = []

    async def create_task(self, spec: DelegateTaskSpec) -> str:
        task_id = f"dry-run-{uuid.uuid4()}"
        self.created.append(spec)
        logger.info("Dry run: delegate task not sent", session_id=spec.session_id,
                    delegate_task_id=task_id, branch=spec.branch_name)
        return task_id

    async def cancel_task(self, delegate_task_id: str) -> None:
        self.cancelled.append(delegate_task_id)
        logger.info("Dry run: cancellation not sent", delegate_task_id=delegate_task_id)

    async def close(self):
        pass

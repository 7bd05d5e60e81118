# infrastructure/clients/issue_tracker.py
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from domain.errors import NotFoundError, UpstreamError
from domain.models.work_item import WorkItem, priority_from_tracker
from infrastructure.clients.http_errors import check_response, upstream_from_transport
from infrastructure.resilience.circuit_breaker import CircuitBreaker
from shared.logging import logger

ISSUE_QUERY = """
query Issue($id: String!) {
  issue(id: $id) {
    id
    identifier
    title
    description
    priority
    labels { nodes { name } }
    assignee { name }
  }
}
"""

COMMENT_MUTATION = """
mutation CommentCreate($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) {
    success
    comment { id }
  }
}
"""

TRANSITION_MUTATION = """
mutation IssueUpdate($id: String!, $stateId: String!) {
  issueUpdate(id: $id, input: { stateId: $stateId }) {
    success
  }
}
"""


class IssueTracker(Protocol):
    """What the coordinator needs from the system of record for issues"""

    async def get_issue(self, issue_id: str) -> WorkItem: ...

    async def post_comment(self, issue_id: str, body: str) -> None: ...

    async def transition_status(self, issue_id: str, state_id: str) -> None: ...


class LinearIssueTracker:
    """GraphQL client for a Linear-style issue tracker"""

    service = "issue_tracker"

    def __init__(self, api_key: str, api_url: str = "https://api.linear.app/graphql",
                 breaker: Optional[CircuitBreaker] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 15.0):
        self.api_key = api_key
        self.api_url = api_url
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

    async def get_issue(self, issue_id: str) -> WorkItem:
        data = await self._execute(ISSUE_QUERY, {"id": issue_id})
        issue = data.get("issue")
        if not issue:
            raise NotFoundError(f"Issue {issue_id} not found in tracker")

        labels = tuple(node["name"] for node in (issue.get("labels") or {}).get("nodes", [])
                       if node.get("name"))
        return WorkItem(
            issue_id=issue["id"],
            title=issue.get("title") or "",
            description=issue.get("description") or "",
            labels=labels,
            priority_hint=priority_from_tracker(issue.get("priority")),
            identifier=issue.get("identifier"),
            assignee=(issue.get("assignee") or {}).get("name"),
        )

    async def post_comment(self, issue_id: str, body: str) -> None:
        data = await self._execute(COMMENT_MUTATION, {"issueId": issue_id, "body": body})
        if not (data.get("commentCreate") or {}).get("success"):
            raise UpstreamError(f"Comment on issue {issue_id} was not accepted", transient=False)
        logger.debug("Comment posted", issue_id=issue_id, length=len(body))

    async def transition_status(self, issue_id: str, state_id: str) -> None:
        data = await self._execute(TRANSITION_MUTATION, {"id": issue_id, "stateId": state_id})
        if not (data.get("issueUpdate") or {}).get("success"):
            raise UpstreamError(f"Status change on issue {issue_id} was not accepted",
                                transient=False)
        logger.info("Issue status transitioned", issue_id=issue_id, state_id=state_id)

    async def _execute(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        if self.breaker is not None:
            return await self.breaker.call(self._post, query, variables)
        return await self._post(query, variables)

    async def _post(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._get_client().post(
                self.api_url,
                json={"query": query, "variables": variables},
                headers={"Authorization": f"Bearer {self.api_key}",
                         "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise upstream_from_transport(self.service, e) from e

        body = check_response(self.service, response)
        errors = body.get("errors")
        if errors:
            messages = "; ".join(str(err.get("message", err)) for err in errors[:3])
            raise UpstreamError(f"{self.service} GraphQL error: {messages}", transient=False,
                                status_code=response.status_code)
        return body.get("data") or {}


class DryRunIssueTracker:
    """Logs outbound tracker traffic instead of sending it"""

    def __init__(self):
        self.comments: List[Tuple[str, str]] = []
        self.transitions: List[Tuple[str, str]] = []

    async def get_issue(self, issue_id: str) -> WorkItem:
        raise NotFoundError(f"Issue {issue_id} cannot be fetched without tracker credentials")

    async def post_comment(self, issue_id: str, body: str) -> None:
        self.comments.append((issue_id, body))
        logger.info("Dry run: comment not sent", issue_id=issue_id, body=body)

    async def transition_status(self, issue_id: str, state_id: str) -> None:
        self.transitions.append((issue_id, state_id))
        logger.info("Dry run: status transition not sent", issue_id=issue_id, state_id=state_id)

    async def close(self):
        pass

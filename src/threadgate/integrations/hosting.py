"""Git-hosting (Gitea API v1) client."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadgate.config import settings
from threadgate.db import base as db_base
from threadgate.engine.errors import HostingError
from threadgate.models import ActionKind
from threadgate.webhooks.self_filter import SelfActionFilter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PullRequestInfo:
    number: int
    title: str
    author: str
    html_url: Optional[str]
    head_branch: Optional[str]
    base_branch: Optional[str]
    state: str
    merged: bool = False


@dataclass(frozen=True)
class IssueInfo:
    number: int
    title: str
    author: str
    html_url: Optional[str]
    state: str
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class JobLog:
    job_name: str
    log: str


class HostingClient:
    """
    Thin async client over the hosting REST API.

    Reads are plain lookups. Writes that the platform will echo back as
    webhooks (comments) are recorded in the action log and committed on
    their own session *before* the request is sent, so the echo is
    suppressed whichever session handles it.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.session_factory = session_factory
        self.base_url = (base_url or settings.hosting_url).rstrip("/")
        self.token = token if token is not None else settings.hosting_token
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v1",
            headers=headers,
            timeout=timeout if timeout is not None else settings.hosting_timeout_seconds,
            transport=transport,
        )
        # (owner, repo) pairs whose labels are known to exist
        self._labels_ready: set[tuple[str, str]] = set()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_issue(self, owner: str, repo: str, number: int) -> IssueInfo:
        data = await self._get_json(f"/repos/{owner}/{repo}/issues/{number}")
        return self._to_issue(data)

    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequestInfo:
        data = await self._get_json(f"/repos/{owner}/{repo}/pulls/{number}")
        return self._to_pull_request(data)

    async def list_open_pull_requests(self, owner: str, repo: str, limit: int = 50) -> list[PullRequestInfo]:
        data = await self._get_json(
            f"/repos/{owner}/{repo}/pulls", params={"state": "open", "limit": limit}
        )
        return [self._to_pull_request(pr) for pr in data or []]

    async def list_open_issues(self, owner: str, repo: str, limit: int = 50) -> list[IssueInfo]:
        data = await self._get_json(
            f"/repos/{owner}/{repo}/issues",
            params={"state": "open", "type": "issues", "limit": limit},
        )
        return [self._to_issue(issue) for issue in data or []]

    async def find_pull_request_for_branch(
        self,
        owner: str,
        repo: str,
        branch: str,
    ) -> Optional[PullRequestInfo]:
        """Open PR whose head is the branch, if any."""
        for pr in await self.list_open_pull_requests(owner, repo):
            if pr.head_branch == branch:
                return pr
        return None

    async def fetch_run_logs(self, owner: str, repo: str, run_id: int) -> list[JobLog]:
        """
        Logs of the failed jobs of a workflow run.

        Lists the run's jobs and fetches each failed job's log. Individual
        log fetch failures are skipped.
        """
        data = await self._get_json(f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs")
        jobs = data.get("jobs", []) if isinstance(data, dict) else []

        logs: list[JobLog] = []
        for job in jobs:
            if job.get("conclusion") != "failure":
                continue
            try:
                response = await self._client.get(
                    f"/repos/{owner}/{repo}/actions/jobs/{job['id']}/logs",
                    headers={"Accept": "text/plain"},
                )
                response.raise_for_status()
                logs.append(JobLog(job_name=str(job.get("name", job["id"])), log=response.text))
            except httpx.HTTPError as e:
                logger.warning(f"Failed to fetch log for job {job.get('id')}: {e}")
        return logs

    # ========================================================================
    # Writes
    # ========================================================================

    async def comment_on_issue(
        self,
        owner: str,
        repo: str,
        number: int,
        body: str,
    ) -> dict[str, Any]:
        await self._record_action(ActionKind.COMMENT_ISSUE, repo, number)
        return await self._post_json(
            f"/repos/{owner}/{repo}/issues/{number}/comments", {"body": body}
        )

    async def ensure_labels(self, owner: str, repo: str, labels: dict[str, str]) -> None:
        """Create missing labels (name -> hex color). Cached per repo."""
        if (owner, repo) in self._labels_ready:
            return
        existing = await self._get_json(f"/repos/{owner}/{repo}/labels", params={"limit": 100})
        names = {label.get("name") for label in existing or []}
        for name, color in labels.items():
            if name not in names:
                await self._post_json(
                    f"/repos/{owner}/{repo}/labels", {"name": name, "color": color}
                )
        self._labels_ready.add((owner, repo))

    async def dispatch_workflow(
        self,
        owner: str,
        repo: str,
        workflow_file: str,
        ref: str = "main",
        inputs: Optional[dict[str, str]] = None,
    ) -> None:
        await self._post_json(
            f"/repos/{owner}/{repo}/actions/workflows/{workflow_file}/dispatches",
            {"ref": ref, "inputs": inputs or {}},
        )

    # ========================================================================
    # Internals
    # ========================================================================

    async def _record_action(self, action_kind: ActionKind, repo: str, ref_id: int) -> None:
        factory = self.session_factory or db_base.async_session_factory
        async with factory() as session:
            await SelfActionFilter(session).record(action_kind, repo, ref_id)
            await session.commit()

    async def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise HostingError(
                f"GET {path} returned {e.response.status_code}", e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise HostingError(f"GET {path} failed: {e}") from e
        return response.json()

    async def _post_json(self, path: str, payload: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise HostingError(
                f"POST {path} returned {e.response.status_code}: {e.response.text[:200]}",
                e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise HostingError(f"POST {path} failed: {e}") from e
        if not response.content:
            return {}
        return response.json()

    def _to_pull_request(self, data: dict[str, Any]) -> PullRequestInfo:
        return PullRequestInfo(
            number=data["number"],
            title=data.get("title", ""),
            author=(data.get("user") or {}).get("login", ""),
            html_url=data.get("html_url"),
            head_branch=(data.get("head") or {}).get("ref"),
            base_branch=(data.get("base") or {}).get("ref"),
            state=data.get("state", "open"),
            merged=bool(data.get("merged")),
        )

    def _to_issue(self, data: dict[str, Any]) -> IssueInfo:
        return IssueInfo(
            number=data["number"],
            title=data.get("title", ""),
            author=(data.get("user") or {}).get("login", ""),
            html_url=data.get("html_url"),
            state=data.get("state", "open"),
            labels=tuple(label.get("name", "") for label in data.get("labels") or []),
        )

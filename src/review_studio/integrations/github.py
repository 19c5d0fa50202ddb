"""GitHub REST API client (repos, forks, commits, pulls, refs)."""

import logging

import httpx

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"


class GitHubError(Exception):
    """Raised when a GitHub API call returns a non-success status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def already_exists(self) -> bool:
        return self.status_code == 422 and "already exists" in self.message


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if not isinstance(data, dict):
        return str(data)
    parts = [data.get("message", "")]
    for err in data.get("errors") or []:
        if isinstance(err, dict) and err.get("message"):
            parts.append(err["message"])
        elif isinstance(err, str):
            parts.append(err)
    return ": ".join(p for p in parts if p) or response.reason_phrase


class GitHubClient:
    """Thin async wrapper over the endpoints the studio needs."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": API_VERSION,
                },
                timeout=httpx.Timeout(self._timeout, connect=5.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs):
        response = await self.client.request(method, path, **kwargs)
        if response.status_code >= 400:
            message = _error_message(response)
            logger.debug("GitHub %s %s -> %s: %s", method, path, response.status_code, message)
            raise GitHubError(response.status_code, message)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _get_or_none(self, path: str, **kwargs):
        try:
            return await self._request("GET", path, **kwargs)
        except GitHubError as e:
            if e.is_not_found:
                return None
            raise

    # ── Users & repositories ────────────────────────────────────────────────

    async def get_authenticated_user(self) -> dict:
        return await self._request("GET", "/user")

    async def get_repo(self, owner: str, repo: str) -> dict | None:
        return await self._get_or_none(f"/repos/{owner}/{repo}")

    async def create_fork(self, owner: str, repo: str, organization: str | None = None) -> dict:
        body = {"organization": organization} if organization else {}
        return await self._request("POST", f"/repos/{owner}/{repo}/forks", json=body)

    async def delete_repo(self, owner: str, repo: str) -> None:
        await self._request("DELETE", f"/repos/{owner}/{repo}")

    async def disable_actions(self, owner: str, repo: str) -> None:
        await self._request(
            "PUT", f"/repos/{owner}/{repo}/actions/permissions", json={"enabled": False}
        )

    # ── Commits & refs ──────────────────────────────────────────────────────

    async def get_commit(self, owner: str, repo: str, sha: str) -> dict | None:
        try:
            return await self._get_or_none(f"/repos/{owner}/{repo}/commits/{sha}")
        except GitHubError as e:
            # An unknown sha is reported as 422 rather than 404.
            if e.status_code == 422:
                return None
            raise

    async def get_branch(self, owner: str, repo: str, branch: str) -> dict | None:
        return await self._get_or_none(f"/repos/{owner}/{repo}/branches/{branch}")

    async def delete_ref(self, owner: str, repo: str, ref: str) -> None:
        await self._request("DELETE", f"/repos/{owner}/{repo}/git/refs/{ref}")

    # ── Pull requests ───────────────────────────────────────────────────────

    async def list_pulls(
        self, owner: str, repo: str, head: str | None = None, state: str = "open"
    ) -> list[dict]:
        params = {"state": state}
        if head:
            params["head"] = head
        return await self._request("GET", f"/repos/{owner}/{repo}/pulls", params=params)

    async def get_pull(self, owner: str, repo: str, number: int) -> dict | None:
        return await self._get_or_none(f"/repos/{owner}/{repo}/pulls/{number}")

    async def create_pull(
        self, owner: str, repo: str, title: str, head: str, base: str, body: str = ""
    ) -> dict:
        return await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )

"""GitHub App integration: look up installations and their repositories.

Only the calls the installation callback needs are implemented. App-level
calls authenticate with a short-lived RS256 JWT; repository listing uses an
installation access token.
"""

import base64
from datetime import UTC, datetime, timedelta

import httpx
import jwt

from reconciler.core.config import get_settings
from reconciler.core.exceptions import GitHubAPIError, TransientExternalFailure


class GitHubAppClient:
    """Client for GitHub App API operations."""

    BASE_URL = "https://api.github.com"
    API_VERSION = "2022-11-28"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = get_settings()
        self._transport = transport

    def _app_jwt(self) -> str:
        """Generate a JWT for GitHub App authentication."""
        if not self.settings.github_app_id or not self.settings.github_private_key:
            raise GitHubAPIError("GitHub App not configured")

        now = datetime.now(UTC)
        payload = {
            "iat": int(now.timestamp()) - 60,  # tolerate clock drift
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": self.settings.github_app_id,
        }

        # Private key may be stored base64 encoded
        private_key = self.settings.github_private_key
        if not private_key.startswith("-----BEGIN"):
            private_key = base64.b64decode(private_key).decode()

        return jwt.encode(payload, private_key, algorithm="RS256")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.BASE_URL,
            timeout=self.settings.external_timeout_seconds,
            transport=self._transport,
        )

    async def _request(self, method: str, endpoint: str, token: str) -> dict:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": self.API_VERSION,
        }
        try:
            async with self._client() as client:
                response = await client.request(method, endpoint, headers=headers)
        except httpx.TransportError as exc:
            raise TransientExternalFailure("github", f"{method} {endpoint}: {exc}") from exc

        if response.status_code >= 500:
            raise TransientExternalFailure("github", f"{method} {endpoint} returned {response.status_code}")
        if response.status_code >= 400:
            raise GitHubAPIError(f"GitHub API error ({response.status_code}): {response.text}")

        return response.json()

    async def get_installation(self, installation_id: int) -> dict:
        """Fetch installation details (account login, type, selection)."""
        return await self._request("GET", f"/app/installations/{installation_id}", self._app_jwt())

    async def _installation_token(self, installation_id: int) -> str:
        data = await self._request(
            "POST", f"/app/installations/{installation_id}/access_tokens", self._app_jwt()
        )
        return data["token"]

    async def list_installation_repository_ids(self, installation_id: int) -> list[str]:
        """Return the ids of every repository the installation can access."""
        token = await self._installation_token(installation_id)
        repository_ids: list[str] = []
        page = 1
        while True:
            data = await self._request("GET", f"/installation/repositories?per_page=100&page={page}", token)
            repositories = data.get("repositories", [])
            repository_ids.extend(str(repo["id"]) for repo in repositories)
            if len(repository_ids) >= data.get("total_count", 0) or not repositories:
                return repository_ids
            page += 1

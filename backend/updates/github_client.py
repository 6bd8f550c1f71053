"""
GitHub Release Lister

Lists repository releases and compares commits through the GitHub REST API.

Rate limits are surfaced as RateLimitedError and never retried here: the
caller decides whether to abandon the current group of containers.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

import aiohttp

from config.settings import AppConfig
from models.release_models import Release

logger = logging.getLogger(__name__)


class GitHubError(Exception):
    """GitHub API request failed"""
    pass


class RepositoryNotFoundError(GitHubError):
    """Repository does not exist or is private"""
    pass


class RateLimitedError(GitHubError):
    """GitHub API quota exhausted"""

    def __init__(self, reset_at: Optional[datetime], limit: Optional[int]):
        self.reset_at = reset_at
        self.limit = limit
        super().__init__(f"GitHub rate limit {limit} exhausted, resets at {reset_at}")


def _parse_rate_limit(headers) -> RateLimitedError:
    reset_at = None
    limit = None
    try:
        reset = headers.get('X-RateLimit-Reset')
        if reset:
            reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)
        raw_limit = headers.get('X-RateLimit-Limit')
        if raw_limit:
            limit = int(raw_limit)
    except (TypeError, ValueError):
        pass
    return RateLimitedError(reset_at, limit)


class GitHubClient:
    """Minimal async client for the releases and compare endpoints"""

    PAGE_SIZE = 100
    MAX_PAGES = 10

    def __init__(self, token: Optional[str] = None, api_url: Optional[str] = None,
                 timeout_seconds: Optional[int] = None):
        self.token = token if token is not None else AppConfig.GITHUB_TOKEN
        self.api_url = (api_url or AppConfig.GITHUB_API_URL).rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or AppConfig.GITHUB_TIMEOUT_SECONDS)

    def _headers(self, accept: str = 'application/vnd.github+json') -> dict:
        headers = {
            'Accept': accept,
            'User-Agent': 'PatchPilot-Release-Checker',
            'X-GitHub-Api-Version': '2022-11-28',
        }
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    async def _check_response(self, response: aiohttp.ClientResponse, owner: str, repo: str):
        if response.status in (403, 429) and response.headers.get('X-RateLimit-Remaining') == '0':
            raise _parse_rate_limit(response.headers)

        if response.status == 404:
            raise RepositoryNotFoundError(f"GitHub repository not found: {owner}/{repo}")

        if response.status != 200:
            text = await response.text()
            raise GitHubError(f"GitHub API returned status {response.status} for {owner}/{repo}: {text[:200]}")

    async def list_releases(self, owner: str, repo: str) -> List[Release]:
        """
        Fetch all published releases of a repository, newest first.

        Raises:
            RateLimitedError: quota exhausted
            RepositoryNotFoundError: repository does not exist
            GitHubError: any other non-200 response
        """
        releases: List[Release] = []
        url = f"{self.api_url}/repos/{owner}/{repo}/releases"

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            for page in range(1, self.MAX_PAGES + 1):
                params = {'per_page': self.PAGE_SIZE, 'page': page}
                async with session.get(url, headers=self._headers(), params=params) as response:
                    await self._check_response(response, owner, repo)
                    data = await response.json()

                if not data:
                    break

                for item in data:
                    release = Release.model_validate(item)
                    if not release.draft:
                        releases.append(release)

                if len(data) < self.PAGE_SIZE:
                    break

        logger.debug(f"Fetched {len(releases)} releases for {owner}/{repo}")
        return releases

    async def compare_commits(self, owner: str, repo: str, base: str, head: str) -> str:
        """
        Return the combined patch text between two refs.

        Files without a textual patch (binary, too large) are listed by name only.
        """
        url = f"{self.api_url}/repos/{owner}/{repo}/compare/{base}...{head}"

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url, headers=self._headers()) as response:
                await self._check_response(response, owner, repo)
                data = await response.json()

        parts = []
        for changed in data.get('files') or []:
            filename = changed.get('filename', '')
            patch = changed.get('patch')
            if patch:
                parts.append(f"--- {filename}\n{patch}")
            else:
                parts.append(f"--- {filename} (no textual diff)")
        return '\n'.join(parts)

# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""Git URL helpers and the GitHub repository validation client."""

import re
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from coreason_devbox.retry import call_with_retry

DEFAULT_BRANCH = "main"

_VALID_GIT_URL = re.compile(r"^(https://github\.com/[^/]+/[^/?]+|git@github\.com:[^/]+/[^/?]+)(\.git)?$")
_HTTPS_URL = re.compile(r"https://github\.com/([^/]+)/([^/?]+)")
_SSH_URL = re.compile(r"git@github\.com:([^/]+)/([^/?]+)")


class GitRepoInfo(BaseModel):
    """Owner and name extracted from a hosting-provider URL."""

    url: str
    owner: str
    name: str
    branch: str = DEFAULT_BRANCH
    is_private: bool = False


class RepositoryValidation(BaseModel):
    """Outcome of probing a repository through the GitHub API."""

    exists: bool
    is_private: bool = False
    default_branch: str = DEFAULT_BRANCH
    branches: list[str] = Field(default_factory=list)
    error: str | None = None


def is_valid_git_url(url: str) -> bool:
    """Check that ``url`` is a GitHub repository URL in HTTPS or SSH form."""
    return bool(_VALID_GIT_URL.match(url))


def parse_git_url(git_url: str) -> GitRepoInfo | None:
    """Extract owner and repository name from an HTTPS or SSH URL.

    A trailing ``.git`` suffix is dropped in both forms.

    Returns:
        GitRepoInfo | None: The parsed info, or None if the URL is not recognised.
    """
    clean_url = git_url.strip()
    if clean_url.endswith(".git"):
        clean_url = clean_url[:-4]

    match = _HTTPS_URL.match(clean_url) or _SSH_URL.match(clean_url)
    if not match:
        return None

    owner, name = match.groups()
    return GitRepoInfo(url=git_url, owner=owner, name=name)


def create_authenticated_git_url(git_url: str, access_token: str) -> str:
    """Embed a token as inline credentials: ``https://<token>@github.com/<path>``.

    SSH URLs are converted to HTTPS. Unrecognised URLs are returned unchanged.
    """
    token = quote(access_token, safe="")
    if git_url.startswith("https://github.com/"):
        return f"https://{token}@{git_url[len('https://'):]}"
    if git_url.startswith("git@github.com:"):
        return f"https://{token}@github.com/{git_url[len('git@github.com:'):]}"
    return git_url


def generate_project_name(git_url: str) -> str:
    """Suggest a project directory name for a repository URL."""
    repo_info = parse_git_url(git_url)
    if repo_info:
        return repo_info.name

    name = git_url.rstrip("/").split("/")[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name or "cloned-project"


class RepositoryValidator:
    """Queries the GitHub REST API for repository existence, visibility and branches.

    Used to populate UI affordances before a clone; the clone pipeline itself
    never calls it.
    """

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        retry_attempts: int = 3,
        retry_backoff_max: float = 8.0,
    ):
        self.api_url = api_url.rstrip("/")
        self._internal_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.retry_attempts = retry_attempts
        self.retry_backoff_max = retry_backoff_max

    async def __aenter__(self) -> "RepositoryValidator":
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()

    def _headers(self, access_token: str | None) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github.v3+json"}
        if access_token:
            headers["Authorization"] = f"token {access_token}"
        return headers

    async def _get(self, path: str, access_token: str | None) -> httpx.Response:
        return await call_with_retry(
            self._client.get,
            f"{self.api_url}{path}",
            headers=self._headers(access_token),
            attempts=self.retry_attempts,
            backoff_max=self.retry_backoff_max,
        )

    async def validate_repository(self, git_url: str, access_token: str | None = None) -> RepositoryValidation:
        """Check whether the repository exists and whether it is private.

        A 403 is reported as an existing private repository that requires
        authentication.
        """
        repo_info = parse_git_url(git_url)
        if not repo_info:
            return RepositoryValidation(exists=False, error="Invalid Git URL")

        try:
            response = await self._get(f"/repos/{repo_info.owner}/{repo_info.name}", access_token)
        except httpx.HTTPError as e:
            logger.warning(f"Repository validation failed for {repo_info.owner}/{repo_info.name}: {e}")
            return RepositoryValidation(exists=False, error=f"Validation error: {e}")

        if response.status_code == 200:
            data: dict[str, Any] = response.json()
            return RepositoryValidation(
                exists=True,
                is_private=bool(data.get("private", False)),
                default_branch=data.get("default_branch") or DEFAULT_BRANCH,
            )
        if response.status_code == 404:
            return RepositoryValidation(exists=False, error="Repository not found or not accessible")
        if response.status_code == 403:
            return RepositoryValidation(
                exists=True,
                is_private=True,
                error="Repository is private and requires authentication",
            )
        return RepositoryValidation(exists=False, error=f"GitHub API error: {response.status_code}")

    async def get_default_branch(self, git_url: str, access_token: str | None = None) -> str:
        validation = await self.validate_repository(git_url, access_token)
        return validation.default_branch

    async def get_branches(self, git_url: str, access_token: str | None = None) -> list[str]:
        """List branch names, falling back to ``["main"]`` on any failure."""
        repo_info = parse_git_url(git_url)
        if not repo_info:
            return [DEFAULT_BRANCH]

        try:
            response = await self._get(f"/repos/{repo_info.owner}/{repo_info.name}/branches", access_token)
        except httpx.HTTPError as e:
            logger.warning(f"Could not list branches for {repo_info.owner}/{repo_info.name}: {e}")
            return [DEFAULT_BRANCH]

        if response.status_code != 200:
            return [DEFAULT_BRANCH]
        return [branch["name"] for branch in response.json()]

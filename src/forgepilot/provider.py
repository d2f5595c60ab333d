from __future__ import annotations

from dataclasses import dataclass
from typing import Literal
from urllib.parse import quote, urlencode


ProviderName = Literal["github", "gitea"]
_PROVIDER_NAMES: frozenset[str] = frozenset({"github", "gitea"})


@dataclass(frozen=True)
class ProviderProfile:
    name: ProviderName
    supports_atomic_multi_commit: bool
    supports_compare_api: bool
    supports_branch_delete: bool
    supports_graphql: bool

    @property
    def is_reduced(self) -> bool:
        return self.name == "gitea"

    @property
    def prefers_local_git_lookup(self) -> bool:
        # Branch lookups on the reduced forge go through the local checkout.
        return self.is_reduced

    @property
    def trusts_actor_lookup(self) -> bool:
        return not self.is_reduced


GITHUB_PROFILE = ProviderProfile(
    name="github",
    supports_atomic_multi_commit=True,
    supports_compare_api=True,
    supports_branch_delete=True,
    supports_graphql=True,
)

GITEA_PROFILE = ProviderProfile(
    name="gitea",
    supports_atomic_multi_commit=False,
    supports_compare_api=False,
    supports_branch_delete=False,
    supports_graphql=False,
)


def profile_for(name: str) -> ProviderProfile:
    normalized = name.strip().lower()
    if normalized not in _PROVIDER_NAMES:
        raise ValueError(f"Unknown forge provider: {name!r}")
    if normalized == "github":
        return GITHUB_PROFILE
    return GITEA_PROFILE


def detect_provider(api_url: str, *, override: str | None = None) -> ProviderProfile:
    """Pick the capability profile for the configured API endpoint.

    Anything that is not the public GitHub API is treated as the reduced
    capability forge unless ``override`` names the provider explicitly.
    """
    if override:
        return profile_for(override)
    if "api.github.com" in api_url.lower():
        return GITHUB_PROFILE
    return GITEA_PROFILE


@dataclass(frozen=True)
class ForgeLinks:
    """Web URL shapes for one forge variant."""

    server_url: str
    owner: str
    repo: str
    profile: ProviderProfile

    @property
    def repo_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/{self.owner}/{self.repo}"

    def job_run_url(self, run_id: str) -> str:
        return f"{self.repo_url}/actions/runs/{run_id}"

    def branch_url(self, branch: str) -> str:
        if self.profile.is_reduced:
            return f"{self.repo_url}/src/branch/{branch}/"
        return f"{self.repo_url}/tree/{branch}"

    def compare_url(self, *, base_branch: str, branch: str, title: str, body: str) -> str:
        query: dict[str, str] = {}
        if not self.profile.is_reduced:
            query["quick_pull"] = "1"
        query["title"] = title
        query["body"] = body
        encoded = urlencode(query, quote_via=quote)
        return f"{self.repo_url}/compare/{base_branch}...{branch}?{encoded}"

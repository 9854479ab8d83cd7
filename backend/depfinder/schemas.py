import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

ACTIVE_WITHIN = timedelta(days=180)
UNKNOWN_VERSION = "unknown"

_GITHUB_URL = re.compile(r"github\.com[/:]([^/]+)/([^/?#]+)")


class RepoRef(BaseModel):
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)

    @classmethod
    def parse(cls, value: str) -> "RepoRef":
        """Accept `owner/repo` or any github.com URL pointing at a repository."""
        value = value.strip()
        match = _GITHUB_URL.search(value)
        if match:
            owner, repo = match.group(1), match.group(2)
        elif "github.com" in value:
            raise ValueError(f"Invalid GitHub URL: {value}")
        else:
            owner, _, repo = value.partition("/")
        repo = repo.strip("/")
        if repo.endswith(".git"):
            repo = repo[: -len(".git")]
        return cls(owner=owner, repo=repo)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


class PackageKind(str, Enum):
    NPM = "npm"
    OTHER = "other"


class PackageDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    kind: PackageKind = PackageKind.NPM


class DependencyType(str, Enum):
    DEPENDENCIES = "dependencies"
    DEV_DEPENDENCIES = "devDependencies"
    PEER_DEPENDENCIES = "peerDependencies"
    OPTIONAL_DEPENDENCIES = "optionalDependencies"
    WORKSPACES = "workspaces"
    UNKNOWN = "unknown"


class DependentRepository(BaseModel):
    name: str
    full_name: str
    description: Optional[str] = None
    url: str
    last_updated: Optional[datetime] = None
    stars: int = Field(default=0, ge=0)
    forks: int = Field(default=0, ge=0)
    dependency_type: DependencyType = DependencyType.UNKNOWN
    dependency_version: str = UNKNOWN_VERSION
    is_workspace: bool = False
    is_private: bool = False
    package_name: str = ""

    @computed_field
    @property
    def is_active(self) -> bool:
        if self.last_updated is None:
            return False
        updated = self.last_updated
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - updated < ACTIVE_WITHIN


class RunState(str, Enum):
    INITIALIZING = "initializing"
    ENUMERATING_PACKAGES = "enumerating_packages"
    BATCHING_DEPENDENTS = "batching_dependents"
    COMPLETED = "completed"
    ABORTED = "aborted"


class EmptyReason(str, Enum):
    NO_PACKAGES_FOUND = "no_packages_found"
    NO_DEPENDENTS_FOUND = "no_dependents_found"
    REPOSITORY_NOT_FOUND = "repository_not_found"


class BatchResult(BaseModel):
    data: List[DependentRepository] = Field(default_factory=list)
    has_next_page: bool = False
    is_partial: bool = False
    error: Optional[str] = None
    processed_count: int = 0
    total_count: int = 0
    state: RunState = RunState.INITIALIZING
    empty_reason: Optional[EmptyReason] = None
    resume_hint: Optional[str] = None


class BatchProgress(BaseModel):
    """Running state of one discovery run.

    results_so_far is deduplicated by full_name in discovery order; the first
    record merged for a repository wins. is_partial only ever goes from False
    to True.
    """

    results_so_far: List[DependentRepository] = Field(default_factory=list)
    processed_package_count: int = 0
    total_package_count: int = 0
    is_partial: bool = False
    error: Optional[str] = None
    state: RunState = RunState.INITIALIZING
    empty_reason: Optional[EmptyReason] = None
    resume_hint: Optional[str] = None
    has_more: bool = False

    def merge(self, repositories: List[DependentRepository]) -> int:
        seen = {r.full_name for r in self.results_so_far}
        added = 0
        for repo in repositories:
            if repo.full_name in seen:
                continue
            seen.add(repo.full_name)
            self.results_so_far.append(repo)
            added += 1
        return added

    def mark_partial(self, error: str, resume_hint: Optional[str] = None):
        self.is_partial = True
        self.error = error
        if resume_hint:
            self.resume_hint = resume_hint

    def snapshot(self, page: int = 1, page_size: int = 30) -> BatchResult:
        # sorted() is stable, so equal star counts keep discovery order
        ranked = sorted(self.results_so_far, key=lambda r: r.stars, reverse=True)
        start = (page - 1) * page_size
        end = start + page_size
        empty_reason = self.empty_reason
        if (
            empty_reason is None
            and self.state == RunState.COMPLETED
            and not ranked
        ):
            empty_reason = EmptyReason.NO_DEPENDENTS_FOUND
        return BatchResult(
            data=ranked[start:end],
            has_next_page=len(ranked) > end or self.has_more,
            is_partial=self.is_partial,
            error=self.error,
            processed_count=self.processed_package_count,
            total_count=self.total_package_count,
            state=self.state,
            empty_reason=empty_reason,
            resume_hint=self.resume_hint,
        )


class PackagesRequest(BaseModel):
    repository: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None

    def to_ref(self) -> RepoRef:
        if self.repository:
            return RepoRef.parse(self.repository)
        return RepoRef(owner=self.owner or "", repo=self.repo or "")


class PackagesResponse(BaseModel):
    repository: str
    packages: List[PackageDescriptor]


class RateLimitStatus(BaseModel):
    core_remaining: Optional[int] = None
    core_reset_at: Optional[datetime] = None
    search_remaining: Optional[int] = None
    search_reset_at: Optional[datetime] = None
    code_search_remaining: Optional[int] = None
    code_search_reset_at: Optional[datetime] = None
    points_used: int = 0
    points_per_minute: int = 0
    queued: int = 0
    response_cache_entries: int = 0
    conditional_cache_entries: int = 0

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class ApiRequest:
    method: str
    path: str
    params: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0


class RepoSummary(dict):
    """Lightweight mapping to hold repository metadata as returned by the provider."""

    full_name: str
    name: str
    html_url: str
    description: Optional[str]
    stargazers_count: int
    forks_count: int
    pushed_at: Optional[str]
    private: bool

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RepoSummary":
        full_name = item.get("full_name") or ""
        return cls(
            {
                "full_name": full_name,
                "name": item.get("name") or full_name.split("/")[-1],
                "html_url": item.get("html_url") or f"https://github.com/{full_name}",
                "description": item.get("description"),
                "stargazers_count": item.get("stargazers_count") or 0,
                "forks_count": item.get("forks_count") or 0,
                "pushed_at": item.get("pushed_at") or item.get("updated_at"),
                "private": bool(item.get("private", False)),
            }
        )


class CodeHost(Protocol):
    async def get_repository(self, full_name: str) -> RepoSummary:
        ...

    async def search_code(
        self, query: str, page: int = 1, per_page: int = 100
    ) -> Dict[str, Any]:
        ...

    async def list_directory(self, full_name: str, path: str) -> List[Dict[str, Any]]:
        ...

    async def get_file_text(self, full_name: str, path: str) -> str:
        ...

    async def has_remaining_budget(self) -> bool:
        ...

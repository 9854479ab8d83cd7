import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import pytest

from depfinder.config import Settings
from depfinder.datasources.base import RepoSummary
from depfinder.errors import NotFoundError
from depfinder.services.dependent_finder import MANIFEST_QUERY

START = 1_700_000_000.0


class FakeClock:
    """Wall clock that only moves when something sleeps on it."""

    def __init__(self, now: float = START):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeHost:
    """In-memory stand-in for the GitHub adapter."""

    def __init__(self):
        self.repos: Dict[str, Any] = {}
        self.files: Dict[Tuple[str, str], Any] = {}
        self.directories: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.search_index: Dict[str, Any] = {}
        self.budget: List[bool] = []
        self.calls: List[tuple] = []

    def add_repo(self, full_name: str, stars: int = 0, forks: int = 0, **extra) -> Dict[str, Any]:
        item = {
            "full_name": full_name,
            "name": full_name.split("/")[-1],
            "html_url": f"https://github.com/{full_name}",
            "description": extra.pop("description", None),
            "stargazers_count": stars,
            "forks_count": forks,
            "pushed_at": extra.pop("pushed_at", "2024-01-01T00:00:00Z"),
            "private": extra.pop("private", False),
        }
        item.update(extra)
        self.repos[full_name] = item
        return item

    def add_file(self, full_name: str, path: str, content: Any):
        if isinstance(content, dict):
            content = json.dumps(content)
        self.files[(full_name, path)] = content

    def add_search(self, query: str, items: Any):
        self.search_index.setdefault(query, [])
        if isinstance(items, Exception):
            self.search_index[query] = items
        else:
            self.search_index[query].extend(items)

    def add_package(self, owner_repo: str, path: str, name: Optional[str]):
        manifest = {"name": name} if name is not None else {"version": "1.0.0"}
        self.add_file(owner_repo, path, manifest)
        self.add_search(
            f"repo:{owner_repo} filename:package.json path:/packages/",
            [{"path": path, "repository": {"full_name": owner_repo}}],
        )

    def add_dependent(
        self,
        package_name: str,
        full_name: str,
        manifest: Dict[str, Any],
        stars: int = 0,
        path: str = "package.json",
        query_name: Optional[str] = None,
    ):
        if full_name not in self.repos:
            self.add_repo(full_name, stars=stars)
        self.add_file(full_name, path, manifest)
        self.add_search(
            MANIFEST_QUERY.format(name=query_name or package_name),
            [{"path": path, "repository": {"full_name": full_name, "name": full_name.split("/")[-1]}}],
        )

    def searched(self) -> List[str]:
        return [call[1] for call in self.calls if call[0] == "search_code"]

    async def get_repository(self, full_name: str) -> RepoSummary:
        self.calls.append(("get_repository", full_name))
        item = self.repos.get(full_name)
        if item is None:
            raise NotFoundError(f"GitHub 404: /repos/{full_name}")
        if isinstance(item, Exception):
            raise item
        return RepoSummary.from_api(item)

    async def search_code(self, query: str, page: int = 1, per_page: int = 100) -> Dict[str, Any]:
        self.calls.append(("search_code", query, page))
        items = self.search_index.get(query, [])
        if isinstance(items, Exception):
            raise items
        start = (page - 1) * per_page
        return {
            "total_count": len(items),
            "incomplete_results": False,
            "items": items[start:start + per_page],
        }

    async def list_directory(self, full_name: str, path: str) -> List[Dict[str, Any]]:
        self.calls.append(("list_directory", full_name, path))
        entries = self.directories.get((full_name, path))
        if entries is None:
            raise NotFoundError(f"GitHub 404: {full_name}/{path}")
        return entries

    async def get_file_text(self, full_name: str, path: str) -> str:
        self.calls.append(("get_file_text", full_name, path))
        content = self.files.get((full_name, path))
        if content is None:
            raise NotFoundError(f"GitHub 404: {full_name}/{path}")
        if isinstance(content, Exception):
            raise content
        return content

    async def has_remaining_budget(self) -> bool:
        self.calls.append(("has_remaining_budget",))
        if self.budget:
            return self.budget.pop(0)
        return True


def make_settings(**overrides) -> Settings:
    values = {
        "queue_interval_seconds": 0.0,
        "batch_delay_seconds": 0.0,
        "rate_limit_max_wait_seconds": 60.0,
        "github_token": "test-token",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def settings() -> Settings:
    return make_settings()

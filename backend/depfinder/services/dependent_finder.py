import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from ..config import Settings, get_settings
from ..datasources.base import CodeHost, RepoSummary
from ..errors import ManifestParseError, NotFoundError, ProviderError, TransportError
from ..schemas import DependentRepository
from .manifest import DependencyMatch, match_dependency, parse_manifest, unscoped_name

MANIFEST_QUERY = '"{name}" filename:package.json'
MAX_MANIFESTS_PER_REPO = 5

# failures that exclude one candidate repository without failing the package
CANDIDATE_FAILURES = (NotFoundError, ManifestParseError, TransportError, ProviderError)


@dataclass
class DependentSearch:
    repositories: List[DependentRepository]
    has_more: bool = False


@dataclass
class _Candidate:
    summary: Dict
    paths: List[str] = field(default_factory=list)


def search_queries(package_name: str) -> List[str]:
    queries = [MANIFEST_QUERY.format(name=package_name)]
    suffix = unscoped_name(package_name)
    if suffix:
        queries.append(MANIFEST_QUERY.format(name=suffix))
    return queries


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class DependentFinder:
    """Finds repositories whose package.json references a package.

    Candidates come from code search; each one is confirmed by reading its
    manifest before it is reported.
    """

    def __init__(self, host: CodeHost, settings: Optional[Settings] = None):
        self.host = host
        self.settings = settings or get_settings()

    async def find_dependents(self, package_name: str) -> List[DependentRepository]:
        return (await self.search_dependents(package_name)).repositories

    async def search_dependents(
        self,
        package_name: str,
        limit: Optional[int] = None,
        exclude: Iterable[str] = (),
    ) -> DependentSearch:
        excluded = {name.lower() for name in exclude}
        candidates, has_more = await self._collect_candidates(package_name, limit, excluded)
        logger.info(f"[dependents] {len(candidates)} candidate repositories for {package_name}")

        results = await asyncio.gather(
            *(self._confirm(package_name, candidate) for candidate in candidates.values()),
            return_exceptions=True,
        )
        repositories = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            if result is not None:
                repositories.append(result)
        logger.info(
            f"[dependents] {len(repositories)}/{len(candidates)} confirmed for {package_name}"
        )
        return DependentSearch(repositories=repositories, has_more=has_more)

    async def _collect_candidates(
        self, package_name: str, limit: Optional[int], excluded: set
    ) -> Tuple[Dict[str, _Candidate], bool]:
        page_size = self.settings.search_page_size
        candidates: Dict[str, _Candidate] = {}
        has_more = False
        for query in search_queries(package_name):
            for page in range(1, self.settings.search_max_pages + 1):
                data = await self.host.search_code(query, page=page, per_page=page_size)
                items = data.get("items") or []
                for item in items:
                    repo = item.get("repository") or {}
                    full_name = repo.get("full_name")
                    if not full_name or full_name.lower() in excluded:
                        continue
                    candidate = candidates.get(full_name)
                    if candidate is None:
                        if limit is not None and len(candidates) >= limit:
                            has_more = True
                            continue
                        candidate = candidates[full_name] = _Candidate(summary=repo)
                    path = item.get("path")
                    if path and path not in candidate.paths:
                        candidate.paths.append(path)

                # has_more only once a new candidate beyond the limit was actually seen
                if has_more:
                    return candidates, True
                total = data.get("total_count")
                if len(items) < page_size or (isinstance(total, int) and page * page_size >= total):
                    break
        return candidates, False

    async def _confirm(
        self, package_name: str, candidate: _Candidate
    ) -> Optional[DependentRepository]:
        full_name = candidate.summary["full_name"]
        match: Optional[DependencyMatch] = None
        for path in candidate.paths[:MAX_MANIFESTS_PER_REPO]:
            try:
                text = await self.host.get_file_text(full_name, path)
                manifest = parse_manifest(text)
            except CANDIDATE_FAILURES as exc:
                logger.warning(f"[dependents] cannot confirm {full_name}:{path}: {exc}")
                continue
            match = match_dependency(manifest, package_name, text)
            if match:
                break
        if match is None:
            logger.info(f"[dependents] {full_name} does not reference {package_name}, excluded")
            return None

        summary = await self._metadata(candidate.summary)
        return DependentRepository(
            name=summary["name"],
            full_name=summary["full_name"] or full_name,
            description=summary["description"],
            url=summary["html_url"],
            last_updated=_parse_timestamp(summary["pushed_at"]),
            stars=max(0, int(summary["stargazers_count"])),
            forks=max(0, int(summary["forks_count"])),
            dependency_type=match.dependency_type,
            dependency_version=match.version,
            is_workspace=match.is_workspace,
            is_private=summary["private"],
            package_name=package_name,
        )

    async def _metadata(self, search_summary: Dict) -> RepoSummary:
        full_name = search_summary["full_name"]
        try:
            return await self.host.get_repository(full_name)
        except (NotFoundError, TransportError, ProviderError) as exc:
            logger.warning(f"[dependents] metadata unavailable for {full_name}: {exc}")
            return RepoSummary.from_api(search_summary)

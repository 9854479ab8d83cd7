"""Discovery runs: repository check, package enumeration, batched dependent search.

A run moves INITIALIZING -> ENUMERATING_PACKAGES -> BATCHING_DEPENDENTS ->
COMPLETED, or to ABORTED from any of them. Every outcome, including aborts,
is reported as a BatchResult; nothing raises out of `stream` or
`find_dependents`.
"""

import asyncio
import inspect
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional

from loguru import logger

from ..config import Settings, get_settings
from ..datasources.base import CodeHost
from ..errors import DiscoveryError, NotFoundError, RateLimitError, RepositoryNotFoundError
from ..schemas import (
    BatchProgress,
    BatchResult,
    EmptyReason,
    PackageDescriptor,
    RunState,
)
from .dependent_finder import DependentFinder
from .package_enumerator import PackageEnumerator

RATE_LIMIT_MESSAGE = "GitHub API rate limit exceeded. Please wait a few minutes and try again."
RATE_LIMIT_DOCS = "See https://docs.github.com/rest/rate-limit for more information."

ProgressCallback = Callable[[BatchResult], Any]


def format_rate_limit_error() -> str:
    return f"{RATE_LIMIT_MESSAGE}\n{RATE_LIMIT_DOCS}"


def resume_hint(exc: Optional[RateLimitError] = None) -> str:
    if exc is not None and exc.reset_at is not None:
        return f"Quota resets at {exc.reset_at.isoformat()}; retry after that time."
    return "Retry in a few minutes to process the remaining packages."


class DiscoveryOrchestrator:
    def __init__(
        self,
        host: CodeHost,
        settings: Optional[Settings] = None,
        enumerator: Optional[PackageEnumerator] = None,
        finder: Optional[DependentFinder] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.host = host
        self.settings = settings or get_settings()
        self.enumerator = enumerator or PackageEnumerator(host, self.settings)
        self.finder = finder or DependentFinder(host, self.settings)
        self._sleep = sleep

    async def discover_packages(self, owner: str, repo: str) -> List[PackageDescriptor]:
        """List the packages of a repository.

        Raises RepositoryNotFoundError, RateLimitError or another DiscoveryError.
        """
        await self._verify_repository(owner, repo)
        return await self.enumerator.discover(owner, repo)

    async def find_dependents(
        self,
        owner: str,
        repo: str,
        selected_packages: Optional[Iterable[str]] = None,
        page_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        page: int = 1,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        result = BatchResult()
        async for result in self.stream(
            owner,
            repo,
            selected_packages=selected_packages,
            page_size=page_size,
            page=page,
            cancel_event=cancel_event,
        ):
            if on_progress is not None:
                await self._notify(on_progress, result)
        return result

    async def stream(
        self,
        owner: str,
        repo: str,
        selected_packages: Optional[Iterable[str]] = None,
        page_size: Optional[int] = None,
        page: int = 1,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[BatchResult]:
        """Yield a BatchResult after every batch; the last one is the final result."""
        page_size = page_size or self.settings.default_page_size
        page = max(1, page)
        full_name = f"{owner}/{repo}"
        progress = BatchProgress()

        try:
            await self._verify_repository(owner, repo)
            progress.state = RunState.ENUMERATING_PACKAGES
            packages = await self.enumerator.discover(owner, repo)
        except DiscoveryError as exc:
            self._abort(progress, full_name, exc)
            yield progress.snapshot(page, page_size)
            return
        except Exception:
            logger.exception(f"[discovery] {full_name}: unexpected error before batching")
            progress.state = RunState.ABORTED
            progress.mark_partial("Failed to fetch dependent projects")
            yield progress.snapshot(page, page_size)
            return

        packages = self._select(packages, selected_packages)
        if not packages:
            logger.info(f"[discovery] {full_name}: no packages to search")
            progress.state = RunState.ABORTED
            progress.empty_reason = EmptyReason.NO_PACKAGES_FOUND
            yield progress.snapshot(page, page_size)
            return

        progress.state = RunState.BATCHING_DEPENDENTS
        progress.total_package_count = len(packages)
        limit = page * page_size
        batch_size = max(1, self.settings.batch_size)
        batches = [packages[i:i + batch_size] for i in range(0, len(packages), batch_size)]

        for index, batch in enumerate(batches):
            logger.info(f"[discovery] {full_name}: batch {index + 1} of {len(batches)}")
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[discovery] {full_name}: cancelled before batch {index + 1}")
                progress.mark_partial("Discovery was cancelled before all packages were processed.")
                progress.state = RunState.ABORTED
                break
            if not await self._has_budget():
                logger.warning(f"[discovery] {full_name}: rate limit reached, stopping")
                progress.mark_partial(format_rate_limit_error(), resume_hint())
                progress.state = RunState.ABORTED
                break

            results = await asyncio.gather(
                *(
                    self.finder.search_dependents(package.name, limit=limit, exclude=[full_name])
                    for package in batch
                ),
                return_exceptions=True,
            )
            rate_limited = self._merge_batch(progress, batch, results)

            if rate_limited is not None:
                logger.warning(f"[discovery] {full_name}: stopping batches due to rate limits")
                progress.mark_partial(format_rate_limit_error(), resume_hint(rate_limited))
                progress.state = RunState.ABORTED
                break

            if index + 1 < len(batches):
                yield progress.snapshot(page, page_size)
                logger.debug(f"[discovery] waiting {self.settings.batch_delay_seconds}s before next batch")
                await self._sleep(self.settings.batch_delay_seconds)

        if progress.state == RunState.BATCHING_DEPENDENTS:
            progress.state = RunState.COMPLETED
        logger.info(
            f"[discovery] {full_name}: {progress.state.value}, "
            f"{len(progress.results_so_far)} dependents from "
            f"{progress.processed_package_count}/{progress.total_package_count} packages"
        )
        yield progress.snapshot(page, page_size)

    async def _verify_repository(self, owner: str, repo: str):
        try:
            await self.host.get_repository(f"{owner}/{repo}")
        except NotFoundError as exc:
            raise RepositoryNotFoundError(f"Repository {owner}/{repo} not found") from exc

    @staticmethod
    def _select(
        packages: List[PackageDescriptor], selected: Optional[Iterable[str]]
    ) -> List[PackageDescriptor]:
        if selected is None:
            return packages
        wanted = {name.strip() for name in selected if name and name.strip()}
        missing = wanted - {package.name for package in packages}
        if missing:
            logger.warning(f"[discovery] selected packages not in repository: {sorted(missing)}")
        return [package for package in packages if package.name in wanted]

    @staticmethod
    def _merge_batch(
        progress: BatchProgress, batch: List[PackageDescriptor], results: List[Any]
    ) -> Optional[RateLimitError]:
        """Merge finished packages into `progress`; return the first rate-limit failure.

        Rate-limited packages are not counted as processed so a resumed run
        picks them up again.
        """
        rate_limited = None
        for package, result in zip(batch, results):
            if isinstance(result, RateLimitError):
                logger.warning(f"[discovery] rate limited while searching {package.name}")
                rate_limited = rate_limited or result
                continue
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            progress.processed_package_count += 1
            if isinstance(result, DiscoveryError):
                logger.warning(f"[discovery] failed to process package {package.name}: {result}")
            elif isinstance(result, Exception):
                logger.opt(exception=result).error(
                    f"[discovery] unexpected error for package {package.name}"
                )
            else:
                added = progress.merge(result.repositories)
                progress.has_more = progress.has_more or result.has_more
                logger.info(f"[discovery] {package.name}: {added} new dependents")
        return rate_limited

    async def _has_budget(self) -> bool:
        try:
            return await self.host.has_remaining_budget()
        except DiscoveryError as exc:
            logger.warning(f"[discovery] budget check failed, continuing: {exc}")
            return True

    @staticmethod
    def _abort(progress: BatchProgress, full_name: str, exc: DiscoveryError):
        progress.state = RunState.ABORTED
        if isinstance(exc, RepositoryNotFoundError):
            progress.error = str(exc)
            progress.empty_reason = EmptyReason.REPOSITORY_NOT_FOUND
        elif isinstance(exc, RateLimitError):
            progress.mark_partial(format_rate_limit_error(), resume_hint(exc))
        else:
            progress.mark_partial(f"Failed to fetch dependent projects: {exc}")
        logger.error(f"[discovery] {full_name}: aborted: {exc}")

    @staticmethod
    async def _notify(callback: ProgressCallback, result: BatchResult):
        try:
            outcome = callback(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("[discovery] progress callback failed")

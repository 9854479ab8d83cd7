import json
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from loguru import logger

from .config import get_settings
from .datasources.github_adapter import GitHubAdapter
from .errors import DiscoveryError, NotFoundError, RateLimitError
from .schemas import (
    BatchResult,
    PackagesRequest,
    PackagesResponse,
    RateLimitStatus,
    RepoRef,
)
from .services.orchestrator import DiscoveryOrchestrator, format_rate_limit_error

settings = get_settings()

logger.remove()
logger.add(sys.stderr, level=settings.log_level.upper())

github = GitHubAdapter(settings)
orchestrator = DiscoveryOrchestrator(github, settings)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await github.aclose()


app = FastAPI(title="Dependents Finder", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def resolve_repo(repository: Optional[str], owner: Optional[str], repo: Optional[str]) -> RepoRef:
    try:
        if repository:
            return RepoRef.parse(repository)
        return RepoRef(owner=owner or "", repo=repo or "")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Missing or invalid repository: {exc}")


def split_packages(packages: Optional[str]) -> Optional[List[str]]:
    if packages is None:
        return None
    return [name.strip() for name in packages.split(",") if name.strip()]


def sse(event: str, data: dict) -> str:
    # default=str converts types like datetime/Enum to JSON-friendly strings
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/rate-limit", response_model=RateLimitStatus)
async def rate_limit():
    await github.gateway.refresh_limits(force=True)
    return github.rate_limit_status()


@app.post("/packages", response_model=PackagesResponse)
async def packages(body: PackagesRequest):
    try:
        ref = body.to_ref()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Missing or invalid repository: {exc}")

    try:
        found = await orchestrator.discover_packages(ref.owner, ref.repo)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RateLimitError:
        raise HTTPException(status_code=429, detail=format_rate_limit_error())
    except DiscoveryError as exc:
        logger.error(f"[/packages] {ref.full_name}: {exc}")
        raise HTTPException(status_code=502, detail=f"GitHub API error: {exc}")
    return PackagesResponse(repository=ref.full_name, packages=found)


@app.get("/dependents", response_model=BatchResult)
async def dependents(
    repository: Optional[str] = Query(None),
    owner: Optional[str] = Query(None),
    repo: Optional[str] = Query(None),
    packages: Optional[str] = Query(None, description="comma-separated package names"),
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.default_page_size, ge=1, le=100),
):
    ref = resolve_repo(repository, owner, repo)
    return await orchestrator.find_dependents(
        ref.owner,
        ref.repo,
        selected_packages=split_packages(packages),
        page_size=per_page,
        page=page,
    )


@app.get("/dependents/stream")
async def dependents_stream(
    repository: Optional[str] = Query(None),
    owner: Optional[str] = Query(None),
    repo: Optional[str] = Query(None),
    packages: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.default_page_size, ge=1, le=100),
):
    ref = resolve_repo(repository, owner, repo)

    async def event_generator() -> AsyncGenerator[str, None]:
        final: Optional[BatchResult] = None
        async for result in orchestrator.stream(
            ref.owner,
            ref.repo,
            selected_packages=split_packages(packages),
            page_size=per_page,
            page=page,
        ):
            final = result
            yield sse("progress", result.model_dump(mode="json"))
        if final is not None:
            yield sse("done", final.model_dump(mode="json"))

    return StreamingResponse(event_generator(), media_type="text/event-stream")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8020)

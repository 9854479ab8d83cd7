import base64
import binascii
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from loguru import logger

from ..config import Settings, get_settings
from ..errors import ManifestParseError
from ..schemas import RateLimitStatus
from .base import ApiRequest, CodeHost, RepoSummary
from .gateway import GatewayContext, RequestGateway


def build_client(settings: Settings) -> httpx.AsyncClient:
    headers = {
        "Accept": "application/vnd.github+json",
        "User-Agent": "depfinder",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    if settings.github_token:
        headers["Authorization"] = f"Bearer {settings.github_token}"
    else:
        logger.warning("No GitHub token configured; API rate limits will be severely restricted")
    client_kwargs: Dict[str, Any] = {
        "base_url": str(settings.github_base_url),
        "headers": headers,
        "timeout": settings.request_timeout_seconds,
    }
    if settings.github_proxy:
        proxy_url = settings.github_proxy
        if not proxy_url.startswith(("http://", "https://", "socks5://")):
            # default to http
            proxy_url = f"http://{proxy_url}"
        client_kwargs["proxy"] = proxy_url
    return httpx.AsyncClient(**client_kwargs)


class GitHubAdapter(CodeHost):
    def __init__(
        self,
        settings: Optional[Settings] = None,
        context: Optional[GatewayContext] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.context = context or GatewayContext.from_settings(self.settings)
        self.client = client or build_client(self.settings)
        self.gateway = RequestGateway(self.settings, self.context, self.client)

    async def get_repository(self, full_name: str) -> RepoSummary:
        item = await self.gateway.execute(
            ApiRequest("GET", f"/repos/{full_name}", priority=1)
        )
        return RepoSummary.from_api(item or {})

    async def search_code(self, query: str, page: int = 1, per_page: int = 100) -> Dict[str, Any]:
        data = await self.gateway.execute(
            ApiRequest("GET", "/search/code", {"q": query, "per_page": per_page, "page": page})
        )
        return data or {"total_count": 0, "incomplete_results": False, "items": []}

    async def list_directory(self, full_name: str, path: str) -> List[Dict[str, Any]]:
        data = await self.gateway.execute(
            ApiRequest("GET", f"/repos/{full_name}/contents/{quote(path.strip('/'))}", priority=1)
        )
        if isinstance(data, dict):
            return [data]
        return [entry for entry in data or [] if isinstance(entry, dict)]

    async def get_file_text(self, full_name: str, path: str) -> str:
        data = await self.gateway.execute(
            ApiRequest("GET", f"/repos/{full_name}/contents/{quote(path.strip('/'))}", priority=1)
        )
        if not isinstance(data, dict) or "content" not in data:
            raise ManifestParseError(f"{full_name}:{path} is not a file")
        if data.get("encoding") != "base64":
            raise ManifestParseError(
                f"{full_name}:{path} has unsupported encoding {data.get('encoding')!r}"
            )
        try:
            return base64.b64decode(data["content"]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ManifestParseError(f"{full_name}:{path} could not be decoded") from exc

    async def has_remaining_budget(self) -> bool:
        return await self.gateway.has_remaining_budget()

    def rate_limit_status(self) -> RateLimitStatus:
        return self.gateway.rate_limit_status()

    async def aclose(self):
        await self.client.aclose()

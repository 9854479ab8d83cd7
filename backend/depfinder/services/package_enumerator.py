from typing import Dict, List, Optional

from loguru import logger

from ..config import Settings, get_settings
from ..datasources.base import CodeHost
from ..errors import ManifestParseError, NotFoundError, ProviderError, TransportError
from ..schemas import PackageDescriptor, PackageKind
from .manifest import parse_manifest

MANIFEST_FILENAME = "package.json"


class PackageEnumerator:
    """Lists the npm packages published from a repository's package directory."""

    def __init__(self, host: CodeHost, settings: Optional[Settings] = None):
        self.host = host
        self.settings = settings or get_settings()

    @property
    def package_dir(self) -> str:
        return self.settings.package_dir.strip("/")

    async def discover(self, owner: str, repo: str) -> List[PackageDescriptor]:
        full_name = f"{owner}/{repo}"
        logger.info(
            f"[packages] discovering in {full_name}/{self.package_dir} "
            f"(mode={self.settings.package_discovery_mode})"
        )
        try:
            if self.settings.package_discovery_mode == "contents":
                paths = await self._paths_from_contents(full_name)
            else:
                paths = await self._paths_from_search(full_name)
        except NotFoundError:
            logger.info(f"[packages] {full_name} has no {self.package_dir}/ directory")
            return []

        found: Dict[str, PackageDescriptor] = {}
        for path in sorted(paths):
            package = await self._read_package(full_name, path)
            if package and package.name not in found:
                found[package.name] = package
                logger.info(f"[packages] found {package.name} at {path}")
        logger.info(f"[packages] {len(found)} packages in {full_name}")
        return list(found.values())

    async def _paths_from_search(self, full_name: str) -> List[str]:
        query = f"repo:{full_name} filename:{MANIFEST_FILENAME} path:/{self.package_dir}/"
        data = await self.host.search_code(query, page=1, per_page=self.settings.search_page_size)
        prefix = f"{self.package_dir}/"
        paths = []
        for item in data.get("items") or []:
            path = item.get("path") or ""
            # path: is a fuzzy qualifier; keep only manifests under the directory
            if path.startswith(prefix) and path.endswith(MANIFEST_FILENAME):
                paths.append(path)
        logger.info(f"[packages] search returned {len(paths)} candidate manifests")
        return paths

    async def _paths_from_contents(self, full_name: str) -> List[str]:
        entries = await self.host.list_directory(full_name, self.package_dir)
        paths = []
        for entry in entries:
            path = entry.get("path") or ""
            if entry.get("type") == "dir":
                paths.append(f"{path}/{MANIFEST_FILENAME}")
            elif entry.get("type") == "file" and entry.get("name") == MANIFEST_FILENAME:
                paths.append(path)
        return paths

    async def _read_package(self, full_name: str, path: str) -> Optional[PackageDescriptor]:
        try:
            manifest = parse_manifest(await self.host.get_file_text(full_name, path))
        except NotFoundError:
            logger.debug(f"[packages] no manifest at {path}")
            return None
        except (ManifestParseError, TransportError, ProviderError) as exc:
            logger.warning(f"[packages] skipping {path}: {exc}")
            return None
        name = manifest.get("name")
        if not isinstance(name, str) or not name.strip():
            logger.warning(f"[packages] skipping {path}: manifest has no name")
            return None
        return PackageDescriptor(name=name.strip(), path=path, kind=PackageKind.NPM)

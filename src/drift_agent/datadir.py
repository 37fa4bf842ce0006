"""
Data Directory Access

Reads and writes the structured records kept under the snapshot working
directory:

    config/path/*.json                             search paths
    config/default/assembly.startswith.json        binary name allow-list
    infrastructure/site/<host>.<domain>.<id>.json  websites
    infrastructure/service/<host>.<domain>.json    OS services per host
    snapshot/<environment>/<host>/<app>.json       applications
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Any, Iterable

import aiofiles

from .models import Host, SearchPath, Website, OsService, Application

logger = logging.getLogger(__name__)


def dumps(record: Any) -> str:
    """Serialize a record (or list of records) the way every data file is written."""
    if isinstance(record, list):
        payload = [r.to_dict() if hasattr(r, "to_dict") else r for r in record]
    elif hasattr(record, "to_dict"):
        payload = record.to_dict()
    else:
        payload = record
    return json.dumps(payload, indent=2) + "\n"


class DataDir:
    """Accessors over the on-disk layout of the snapshot working directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def search_path_dir(self) -> Path:
        return self.root / "config" / "path"

    @property
    def prefixes_file(self) -> Path:
        return self.root / "config" / "default" / "assembly.startswith.json"

    @property
    def site_dir(self) -> Path:
        return self.root / "infrastructure" / "site"

    @property
    def service_dir(self) -> Path:
        return self.root / "infrastructure" / "service"

    @property
    def snapshot_dir(self) -> Path:
        return self.root / "snapshot"

    def site_file(self, site: Website) -> Path:
        return self.site_dir / f"{site.host.name}.{site.host.domain}.{site.id}.json"

    def service_file(self, host: Host) -> Path:
        return self.service_dir / f"{host.name}.{host.domain}.json"

    def snapshot_file(self, app: Application) -> Path:
        return self.snapshot_dir / app.environment / str(app.host) / f"{app.name}.json"

    def get_paths(self, host: Optional[Host] = None) -> List[SearchPath]:
        """Get configured search paths, optionally only those of one host."""
        if not self.search_path_dir.exists():
            return []
        pattern = f"{host}.*.json" if host else "*.json"
        paths = []
        for file in sorted(self.search_path_dir.rglob(pattern)):
            if file.name.startswith("dummy"):
                continue
            try:
                paths.append(SearchPath.from_dict(_read_json(file)))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable search path: {file}")
                logger.error(f"Search path error: {e}")
        if host:
            paths = [p for p in paths if p.host == host]
        return paths

    def get_hosts(self) -> List[Host]:
        hosts: List[Host] = []
        for search_path in self.get_paths():
            if search_path.host not in hosts:
                hosts.append(search_path.host)
        return hosts

    def get_prefixes(self) -> List[str]:
        if not self.prefixes_file.exists():
            logger.warning(f"No binary name allow-list at {self.prefixes_file}")
            return []
        return list(_read_json(self.prefixes_file))

    def get_sites(self, host: Optional[Host] = None) -> List[Website]:
        if not self.site_dir.exists():
            return []
        pattern = f"{host.name}.{host.domain}.*.json" if host else "*.json"
        sites = [Website.from_dict(_read_json(f)) for f in sorted(self.site_dir.rglob(pattern))]
        if host:
            sites = [s for s in sites if s.host == host]
        return sites

    def get_services(self, host: Optional[Host] = None) -> List[OsService]:
        if not self.service_dir.exists():
            return []
        files: Iterable[Path]
        if host:
            files = [f for f in [self.service_file(host)] if f.exists()]
        else:
            files = sorted(self.service_dir.rglob("*.json"))
        return [OsService.from_dict(s) for f in files for s in _read_json(f)]

    def write_json(self, file: Path, record: Any) -> None:
        file.parent.mkdir(parents=True, exist_ok=True)
        file.write_text(dumps(record), encoding="utf-8")

    async def write_json_async(self, file: Path, record: Any) -> None:
        file.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(file, "w", encoding="utf-8") as f:
            await f.write(dumps(record))


def _read_json(file: Path) -> Any:
    with open(file, "r", encoding="utf-8-sig") as f:
        return json.load(f)

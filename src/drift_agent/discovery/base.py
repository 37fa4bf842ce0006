"""Base classes for discovery."""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..datadir import DataDir
from ..models import Host
from ..transport import TransportFactory

logger = logging.getLogger(__name__)


def default_workers() -> int:
    """Worker count for per-host fan-out: logical CPUs minus one, at least one."""
    return max((os.cpu_count() or 1) - 1, 1)


@dataclass
class DiscoveryResult:
    """Result of a discovery pass."""
    records: List[Path] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def merge(self, other: "DiscoveryResult") -> None:
        self.records.extend(other.records)
        self.errors.extend(other.errors)


@dataclass
class DiscoveryContext:
    """Collaborators shared by every discovery entry point."""
    data_dir: DataDir
    transport_factory: Optional[TransportFactory] = None
    workers: int = field(default_factory=default_workers)


async def for_each_host(
    hosts: List[Host],
    discover_host: Callable[[Host], Awaitable[DiscoveryResult]],
    workers: int,
) -> DiscoveryResult:
    """
    Run a per-host discovery over all hosts with bounded parallelism.

    Hosts complete in any order. A host that raises contributes an error
    entry and nothing else.
    """
    semaphore = asyncio.Semaphore(max(workers, 1))

    async def run(host: Host) -> DiscoveryResult:
        async with semaphore:
            try:
                return await discover_host(host)
            except Exception as e:
                logger.warning(f"Discovery failed on host: {host.fqdn}")
                logger.error(f"Host discovery error: {e}", exc_info=True)
                return DiscoveryResult(errors=[f"{host.fqdn}: {e}"])

    result = DiscoveryResult()
    for host_result in await asyncio.gather(*(run(h) for h in hosts)):
        result.merge(host_result)
    return result

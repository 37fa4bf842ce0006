"""OS service discovery, limited to services installed under search paths."""

import asyncio
import logging
from typing import List

from ..models import Host, OsService
from .base import DiscoveryContext, DiscoveryResult, for_each_host

logger = logging.getLogger(__name__)


def filter_services(services: List[OsService], prefixes: List[str]) -> List[OsService]:
    """Keep services whose binary path contains one of the prefixes, sorted by name."""
    lowered = [p.lower() for p in prefixes if p]
    kept = [s for s in services if any(p in s.path.lower() for p in lowered)]
    return sorted(kept, key=lambda s: s.name)


async def discover_services(ctx: DiscoveryContext) -> DiscoveryResult:
    """Discover OS services on every host, one aggregate record per host."""
    logger.info("Discovering OS services...")
    ctx.data_dir.service_dir.mkdir(parents=True, exist_ok=True)

    async def discover_host(host: Host) -> DiscoveryResult:
        return await _discover_host_services(ctx, host)

    return await for_each_host(ctx.data_dir.get_hosts(), discover_host, ctx.workers)


async def _discover_host_services(ctx: DiscoveryContext, host: Host) -> DiscoveryResult:
    result = DiscoveryResult()
    prefixes = [p.local_path for p in ctx.data_dir.get_paths(host)]
    logger.debug(f"Service probe: {host.fqdn}.")
    try:
        transport = ctx.transport_factory(host)
        services = filter_services(await asyncio.to_thread(transport.get_services), prefixes)
    except Exception as e:
        logger.warning(f"Failed to retrieve services on host: {host.fqdn}.")
        logger.error(f"Service discovery error: {e}")
        result.errors.append(f"{host.fqdn}: {e}")
        return result

    for service in services:
        logger.debug(f"Service discovered: Host: {host}, Name: {service.name}, State: {service.state}.")
    file = ctx.data_dir.service_file(host)
    await ctx.data_dir.write_json_async(file, services)
    result.records.append(file)
    return result

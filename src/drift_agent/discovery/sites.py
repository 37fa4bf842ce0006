"""Hosted website discovery from each host's web server configuration."""

import asyncio
import logging

from ..models import Host
from ..parsers import parse_site_config
from .base import DiscoveryContext, DiscoveryResult, for_each_host

logger = logging.getLogger(__name__)


async def discover_sites(ctx: DiscoveryContext) -> DiscoveryResult:
    """Discover websites on every host, one record per site."""
    logger.info("Discovering websites...")
    ctx.data_dir.site_dir.mkdir(parents=True, exist_ok=True)

    async def discover_host(host: Host) -> DiscoveryResult:
        return await _discover_host_sites(ctx, host)

    return await for_each_host(ctx.data_dir.get_hosts(), discover_host, ctx.workers)


async def _discover_host_sites(ctx: DiscoveryContext, host: Host) -> DiscoveryResult:
    result = DiscoveryResult()
    try:
        transport = ctx.transport_factory(host)
        text = await asyncio.to_thread(transport.read_site_config)
        sites = parse_site_config(text, host)
    except Exception as e:
        logger.warning(f"Failed to get website info from host: {host.fqdn}")
        logger.error(f"Website discovery error: {e}")
        result.errors.append(f"{host.fqdn}: {e}")
        return result

    for site in sites:
        logger.debug(f"Processing website: {site.name}, on host: {site.host}")
        file = ctx.data_dir.site_file(site)
        await ctx.data_dir.write_json_async(file, site)
        result.records.append(file)
    return result

"""Application discovery across registered search paths."""

import asyncio
import logging
import os
from typing import List, Optional

from ..binary_identity import BinaryIdentityError
from ..models import Application, Host, SearchPath
from .analyzer import Analyzer, find_main_binary, matches_prefix
from .base import DiscoveryContext, DiscoveryResult, for_each_host

logger = logging.getLogger(__name__)


async def discover_apps(ctx: DiscoveryContext) -> DiscoveryResult:
    """Discover every application on every host and write its snapshot."""
    logger.info("Discovering applications...")
    search_paths = [p for p in ctx.data_dir.get_paths() if p.environment.strip()]
    prefixes = ctx.data_dir.get_prefixes()
    hosts = []
    for search_path in search_paths:
        if search_path.host not in hosts:
            hosts.append(search_path.host)

    async def discover_host(host: Host) -> DiscoveryResult:
        return await _discover_host_apps(ctx, [p for p in search_paths if p.host == host], prefixes)

    result = await for_each_host(hosts, discover_host, ctx.workers)
    logger.info(f"Application discovery complete: {len(result.records)} snapshots, {len(result.errors)} errors")
    return result


async def _discover_host_apps(
    ctx: DiscoveryContext,
    search_paths: List[SearchPath],
    prefixes: List[str],
) -> DiscoveryResult:
    result = DiscoveryResult()
    if not search_paths:
        return result
    host = search_paths[0].host
    logger.info(f"Discovering applications on host: {host.fqdn}")
    for search_path in search_paths:
        try:
            app_dirs = await asyncio.to_thread(_list_app_dirs, search_path.share)
        except OSError as e:
            logger.warning(f"Failed to list applications under: {search_path.share}")
            logger.error(f"Search path error: {e}")
            result.errors.append(f"{search_path.share}: {e}")
            continue
        for app_path in app_dirs:
            await discover_app(ctx, search_path, app_path, prefixes=prefixes, result=result)
    return result


def _list_app_dirs(share: str) -> List[str]:
    return sorted(e.path for e in os.scandir(share) if e.is_dir())


async def discover_app(
    ctx: DiscoveryContext,
    search_path: SearchPath,
    app_path: str,
    prefixes: Optional[List[str]] = None,
    result: Optional[DiscoveryResult] = None,
) -> Optional[Application]:
    """
    Discover one application directory and write its snapshot.

    Directories without an allow-listed main binary are skipped silently.
    """
    if prefixes is None:
        prefixes = ctx.data_dir.get_prefixes()
    if result is None:
        result = DiscoveryResult()

    main_binary = await asyncio.to_thread(find_main_binary, search_path, app_path)
    if not main_binary or not os.path.isfile(main_binary):
        return None
    if not matches_prefix(os.path.basename(main_binary), prefixes):
        return None

    try:
        app = await asyncio.to_thread(_resolve, ctx, search_path, main_binary, prefixes)
    except BinaryIdentityError as e:
        logger.warning(f"Failed to identify main binary of application at: {app_path}")
        logger.error(f"Binary identity error: {e}")
        result.errors.append(f"{app_path}: {e}")
        return None

    file = ctx.data_dir.snapshot_file(app)
    await ctx.data_dir.write_json_async(file, app)
    result.records.append(file)
    logger.info(f"Application discovered: {app.name} ({app.environment}/{app.host})")
    return app


def _resolve(ctx: DiscoveryContext, search_path: SearchPath, main_binary: str, prefixes: List[str]) -> Application:
    sites = ctx.data_dir.get_sites(search_path.host)
    services = ctx.data_dir.get_services(search_path.host)
    return Analyzer(prefixes).resolve(main_binary, search_path, sites=sites, services=services)

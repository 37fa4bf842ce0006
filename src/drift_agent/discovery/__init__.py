"""
Discovery Module

Discovers deployed applications, hosted websites and OS services across the
registered fleet and writes them into the data directory.
"""

from .base import DiscoveryResult, DiscoveryContext, default_workers
from .analyzer import Analyzer
from .applications import discover_apps, discover_app
from .sites import discover_sites
from .services import discover_services


async def discover_all(ctx: DiscoveryContext) -> DiscoveryResult:
    """Full pass: infrastructure first, so applications can link to it."""
    result = DiscoveryResult()
    result.merge(await discover_services(ctx))
    result.merge(await discover_sites(ctx))
    result.merge(await discover_apps(ctx))
    return result


__all__ = [
    "DiscoveryResult",
    "DiscoveryContext",
    "default_workers",
    "Analyzer",
    "discover_apps",
    "discover_app",
    "discover_sites",
    "discover_services",
    "discover_all",
]

"""
Host Transport

Per-host remote reads used by infrastructure discovery: the web server's
master site configuration and the OS service inventory.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

import winrm

from .config import WinRMConfig
from .models import Host, OsService

logger = logging.getLogger(__name__)

SITE_CONFIG_PATH = r"C:\Windows\System32\inetsrv\config\applicationHost.config"

SERVICE_QUERY = (
    "Get-CimInstance -ClassName Win32_Service | "
    "Select-Object Name,DisplayName,PathName,StartMode,StartName,State | "
    "ConvertTo-Json -Compress"
)


class TransportError(Exception):
    """A remote read failed."""


class HostTransport:
    """
    Base class for reading remote host state.

    Platform-specific transports should inherit from this class.
    """

    def __init__(self, host: Host):
        self.host = host

    def read_site_config(self) -> str:
        raise NotImplementedError

    def query_services(self) -> List[Dict[str, Any]]:
        """Raw service records with Name, DisplayName, PathName, StartMode, StartName and State."""
        raise NotImplementedError

    def get_services(self) -> List[OsService]:
        services = []
        for record in self.query_services():
            services.append(OsService(
                host=self.host,
                name=str(record.get("Name") or ""),
                display_name=str(record.get("DisplayName") or ""),
                path=str(record.get("PathName") or ""),
                start_mode=str(record.get("StartMode") or ""),
                username=str(record.get("StartName") or ""),
                state=str(record.get("State") or ""),
            ))
        return services


class WinRMTransport(HostTransport):
    """Reads host state over WinRM PowerShell sessions."""

    def __init__(self, host: Host, config: WinRMConfig):
        super().__init__(host)
        self.config = config
        self._session: Optional[winrm.Session] = None

    @property
    def url(self) -> str:
        return f"{self.config.scheme}://{self.host.fqdn}:{self.config.port}/wsman"

    def _run_ps(self, script: str) -> str:
        if self._session is None:
            self._session = winrm.Session(
                self.url,
                auth=(self.config.username, self.config.password),
                transport=self.config.transport,
            )
        result = self._session.run_ps(script)
        if result.status_code != 0:
            error = result.std_err.decode("utf-8", errors="replace").strip()
            raise TransportError(f"{self.host.fqdn}: exit status {result.status_code}: {error}")
        return result.std_out.decode("utf-8", errors="replace")

    def read_site_config(self) -> str:
        return self._run_ps(f"Get-Content -Raw -Path '{SITE_CONFIG_PATH}'")

    def query_services(self) -> List[Dict[str, Any]]:
        raw = self._run_ps(SERVICE_QUERY).strip()
        if not raw:
            return []
        data = json.loads(raw)
        # ConvertTo-Json emits a bare object for a single result
        return data if isinstance(data, list) else [data]


TransportFactory = Callable[[Host], HostTransport]


def winrm_transport_factory(config: WinRMConfig) -> TransportFactory:
    def factory(host: Host) -> HostTransport:
        return WinRMTransport(host, config)
    return factory

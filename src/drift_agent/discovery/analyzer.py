"""Application analysis: main binary resolution, dependencies and linkage."""

import logging
import ntpath
import os
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional, Sequence

from ..binary_identity import read_identity, BinaryIdentityError
from ..models import (
    Application,
    BinaryIdentity,
    DatabaseConnection,
    EndpointConnection,
    OsService,
    Role,
    SearchPath,
    Website,
    local_path,
)
from ..parsers import find_database_connections, find_endpoint_connections

logger = logging.getLogger(__name__)

INHERITS_PATTERN = re.compile(r'\bInherits\s*=\s*"([^"]*)"')
WEB_BINARY_SUFFIXES = ("api.dll", "web.dll", "ui.dll")
SERVICE_CONFIG_SUFFIXES = (".exe.config", ".dll.config")
BINARY_SUFFIX = ".dll"
CONFIG_SUFFIX = ".config"


def matches_prefix(file_name: str, prefixes: Sequence[str]) -> bool:
    name = file_name.lower()
    return any(name.startswith(p.lower()) for p in prefixes)


def find_web_binary(app_path: str) -> Optional[str]:
    """
    Expected main binary of a web application directory.

    The bootstrap file's ``Inherits="Namespace.Type"`` declaration names the
    binary (``bin/Namespace.dll``); otherwise the first binary in ``bin``
    named after the directory and ending in a conventional suffix is used.
    """
    bootstrap = os.path.join(app_path, "Global.asax")
    if os.path.isfile(bootstrap):
        with open(bootstrap, "r", encoding="utf-8-sig", errors="replace") as f:
            match = INHERITS_PATTERN.search(f.read())
        if match and match.group(1):
            assembly = match.group(1).rsplit(".", 1)[0]
            return os.path.join(app_path, "bin", f"{assembly}{BINARY_SUFFIX}")

    bin_dir = os.path.join(app_path, "bin")
    if os.path.isdir(bin_dir):
        app_name = os.path.basename(os.path.normpath(app_path)).lower()
        for file_name in sorted(os.listdir(bin_dir)):
            lower = file_name.lower()
            if lower.startswith(app_name) and lower.endswith(WEB_BINARY_SUFFIXES):
                return os.path.join(bin_dir, file_name)
    return None


def find_service_binary(app_path: str) -> Optional[str]:
    """Expected main binary of a service directory, named by its process configuration file."""
    if not os.path.isdir(app_path):
        return None
    for file_name in sorted(os.listdir(app_path)):
        if file_name.lower().endswith(SERVICE_CONFIG_SUFFIXES):
            return os.path.join(app_path, file_name[:-len(CONFIG_SUFFIX)])
    return None


def find_main_binary(search_path: SearchPath, app_path: str) -> Optional[str]:
    if search_path.role == Role.SERVICE:
        return find_service_binary(app_path)
    return find_web_binary(app_path)


def _same_path(a: str, b: str) -> bool:
    return a.rstrip("\\/").lower() == b.rstrip("\\/").lower()


def host_path(folder: str, search_path: SearchPath) -> str:
    """
    How the host itself names ``folder``, a directory below the search path's share.

    The search path's host-local path is joined with the folder's path
    relative to the share. Folders outside the share fall back to
    admin-share normalisation.
    """
    share = search_path.share.replace("/", "\\").rstrip("\\")
    candidate = folder.replace("/", "\\").rstrip("\\")
    if candidate.lower() == share.lower():
        return search_path.local_path
    if candidate.lower().startswith(share.lower() + "\\"):
        return ntpath.join(search_path.local_path, candidate[len(share) + 1:])
    return local_path(folder)


def link_website(app: Application, sites: Sequence[Website], search_path: SearchPath) -> None:
    """Attach the hosting website and compose the application URL."""
    host = search_path.host
    site_path = app.binary_folder
    if ntpath.basename(site_path).lower() == "bin":
        site_path = ntpath.dirname(site_path)
    site_path = host_path(site_path, search_path)

    for site in sites:
        if site.host != host:
            continue
        application = next((a for a in site.applications if _same_path(a.physical_path, site_path)), None)
        if application is None:
            continue
        app.website = site
        binding = next((b for b in site.bindings if b.protocol == "http"), None)
        if binding is not None:
            parts = binding.binding_information.split(":")
            port = parts[1] if len(parts) > 1 else ""
            header = parts[2] if len(parts) > 2 else ""
            if not header.strip() or header == "*" or header.lower() == "localhost":
                header = str(host)
            app.url = f"{binding.protocol}://{header}:{port}{application.path}"
        logger.debug(f"Application: {app.name}, linked to website: {site.name} ({app.url}).")
        return


def link_os_service(app: Application, services: Sequence[OsService], search_path: SearchPath) -> None:
    """Attach the OS service whose binary path contains the application directory."""
    host = search_path.host
    service_path = host_path(app.binary_folder, search_path).lower()
    for service in services:
        if service.host == host and service_path in service.path.lower():
            app.os_service = service
            logger.debug(f"Application: {app.name}, linked to OS service: {service.host}/{service.name}.")
            return


def config_search_root(app: Application) -> str:
    """Configuration lives one level above ``bin`` for web apps, beside the binary for services."""
    folder = os.path.dirname(app.main_binary.path)
    if app.role == Role.WEB:
        return os.path.dirname(folder)
    return folder


def _config_files(root: str) -> List[Path]:
    if not root or not os.path.isdir(root):
        return []
    return sorted(p for p in Path(root).rglob(f"*{CONFIG_SUFFIX}") if p.is_file())


def get_database_connections(root: str) -> List[DatabaseConnection]:
    connections = []
    for config in _config_files(root):
        try:
            text = config.read_text(encoding="utf-8-sig", errors="replace")
        except OSError as e:
            logger.warning(f"Failed to read config: {config}")
            logger.error(f"Config read error: {e}")
            continue
        connections.extend(find_database_connections(text, str(config)))
    return connections


def get_endpoint_connections(root: str) -> List[EndpointConnection]:
    connections = []
    for config in _config_files(root):
        try:
            connections.extend(find_endpoint_connections(config.read_bytes(), str(config)))
        except (OSError, ET.ParseError) as e:
            logger.warning(f"Failed to retrieve endpoints from config: {config}")
            logger.error(f"Endpoint discovery error: {e}")
    return connections


class Analyzer:
    """Resolves a discovered application from its main binary."""

    def __init__(self, prefixes: Sequence[str]):
        self.prefixes = list(prefixes)

    def get_dependencies(self, main_binary_path: str) -> List[BinaryIdentity]:
        """Identities of allow-listed binaries below the main binary's folder."""
        folder = os.path.dirname(main_binary_path)
        if not folder or not os.path.isdir(folder):
            return []
        dependencies = []
        for file in sorted(Path(folder).rglob(f"*{BINARY_SUFFIX}")):
            if os.path.normcase(str(file)).lower() == os.path.normcase(main_binary_path).lower():
                continue
            if not matches_prefix(file.name, self.prefixes):
                continue
            try:
                dependencies.append(read_identity(file))
            except BinaryIdentityError as e:
                logger.warning(f"Skipping dependency {file}: {e.kind.value}")
                logger.error(f"Binary identity error: {e}")
        return dependencies

    def resolve(
        self,
        main_binary_path: str,
        search_path: SearchPath,
        sites: Sequence[Website] = (),
        services: Sequence[OsService] = (),
    ) -> Application:
        """
        Build an application record for a main binary.

        Raises:
            BinaryIdentityError: the main binary itself cannot be identified.
        """
        main_binary = read_identity(main_binary_path)
        app = Application(
            name=main_binary.name,
            role=search_path.role,
            environment=search_path.environment,
            host=search_path.host,
            main_binary=main_binary,
            dependencies=self.get_dependencies(main_binary_path),
        )

        try:
            if app.role == Role.WEB and sites:
                link_website(app, sites, search_path)
            if app.role == Role.SERVICE and services:
                link_os_service(app, services, search_path)
        except Exception as e:
            logger.warning(f"Failed to link hosting infrastructure for application: {app.name}")
            logger.error(f"Linkage error: {e}")

        root = config_search_root(app)
        try:
            app.database_connections = get_database_connections(root)
        except OSError as e:
            logger.warning(f"Failed to search {root} for database connections")
            logger.error(f"Database connection discovery error: {e}")
        try:
            app.endpoint_connections = get_endpoint_connections(root)
        except OSError as e:
            logger.warning(f"Failed to search {root} for endpoint connections")
            logger.error(f"Endpoint discovery error: {e}")
        return app

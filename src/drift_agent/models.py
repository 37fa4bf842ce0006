"""
Inventory Models

Records discovered from the fleet and persisted as snapshot files.
"""

import ntpath
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional
from urllib.parse import urlsplit


class Role(str, Enum):
    """Application roles a search path can declare."""
    WEB = "web"
    SERVICE = "service"

    @classmethod
    def parse(cls, value: str) -> "Role":
        value = (value or "").strip().lower()
        if value == "svc":
            return cls.SERVICE
        return cls(value)


class DatabaseProvider(str, Enum):
    """Database connection providers recognised in configuration files."""
    MSSQL = "mssql"
    RAVENDB = "ravendb"
    LDAP = "ldap"


@dataclass(frozen=True)
class Host:
    """A scan target, identified by short name and domain."""
    name: str
    domain: str = ""

    def __post_init__(self):
        object.__setattr__(self, "name", (self.name or "").strip().lower())
        object.__setattr__(self, "domain", (self.domain or "").strip().lower())

    def __str__(self) -> str:
        return self.name

    @property
    def fqdn(self) -> str:
        return f"{self.name}.{self.domain}" if self.domain else self.name

    @classmethod
    def parse(cls, value: str) -> "Host":
        """Build a host from a URL or a (possibly dotted) host name."""
        value = (value or "").strip()
        if "://" in value:
            value = urlsplit(value).hostname or ""
        elif ":" in value:
            value = value.split(":", 1)[0]
        name, _, domain = value.lower().partition(".")
        return cls(name=name, domain=domain)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "domain": self.domain}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Host"]:
        if data is None:
            return None
        return cls(name=data.get("name", ""), domain=data.get("domain", ""))


def local_path(share_path: str) -> str:
    """
    Convert host-share notation into the host's own path notation.

    ``\\\\host1\\d$\\Apps\\env1`` becomes ``d:\\Apps\\env1``. Paths without an
    administrative share segment lose their first segment (the server name).
    """
    parts = [p for p in share_path.replace("/", "\\").split("\\") if p]
    for i, part in enumerate(parts):
        if len(part) == 2 and part.endswith("$"):
            parts = parts[i:]
            break
    else:
        parts = parts[1:]
    return "\\".join(parts).replace("$", ":")


@dataclass
class SearchPath:
    """Where to look for deployed applications of one role in one environment."""
    host: Host
    role: Role
    environment: str
    share: str
    path: Optional[str] = None

    @property
    def local_path(self) -> str:
        return self.path or local_path(self.share)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host.to_dict(),
            "role": self.role.value,
            "environment": self.environment,
            "share": self.share,
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchPath":
        return cls(
            host=Host.from_dict(data["host"]),
            role=Role.parse(data["role"]),
            environment=data.get("environment") or "",
            share=data["share"],
            path=data.get("path"),
        )


@dataclass
class VersionInfo:
    assembly_version: str
    file_version: str = ""
    product_version: str = ""
    build_timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VersionInfo":
        ts = data.get("build_timestamp")
        return cls(
            assembly_version=data.get("assembly_version", ""),
            file_version=data.get("file_version", ""),
            product_version=data.get("product_version", ""),
            build_timestamp=datetime.fromisoformat(ts) if ts else None,
        )


@dataclass
class BinaryIdentity:
    """Identity of a deployable binary, read from its headers."""
    name: str
    path: str
    version: VersionInfo
    product: str = ""
    company: str = ""
    is_debug: bool = False
    is_prerelease: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BinaryIdentity":
        return cls(
            name=data["name"],
            path=data["path"],
            version=VersionInfo.from_dict(data.get("version") or {}),
            product=data.get("product", ""),
            company=data.get("company", ""),
            is_debug=data.get("is_debug", False),
            is_prerelease=data.get("is_prerelease", False),
        )


@dataclass
class WebsiteApplication:
    path: str
    physical_path: str
    application_pool: Optional[str] = None


@dataclass
class WebsiteBinding:
    protocol: str
    binding_information: str


@dataclass
class WebsiteApplicationPool:
    name: str
    runtime_version: Optional[str] = None
    pipeline_mode: Optional[str] = None
    username: Optional[str] = None


@dataclass
class Website:
    """A site hosted by a host's web server."""
    host: Host
    id: int
    name: str
    applications: List[WebsiteApplication] = field(default_factory=list)
    bindings: List[WebsiteBinding] = field(default_factory=list)
    application_pools: List[WebsiteApplicationPool] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Website":
        return cls(
            host=Host.from_dict(data["host"]),
            id=int(data["id"]),
            name=data["name"],
            applications=[WebsiteApplication(**a) for a in data.get("applications", [])],
            bindings=[WebsiteBinding(**b) for b in data.get("bindings", [])],
            application_pools=[WebsiteApplicationPool(**p) for p in data.get("application_pools", [])],
        )


@dataclass
class OsService:
    """An operating system service installed on a host."""
    host: Host
    name: str
    display_name: str = ""
    path: str = ""
    start_mode: str = ""
    username: str = ""
    state: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OsService":
        values = dict(data)
        values["host"] = Host.from_dict(data["host"])
        return cls(**values)


@dataclass
class DatabaseConnection:
    connection_string: str
    provider: Optional[DatabaseProvider] = None
    database: Optional[str] = None
    instance: Optional[str] = None
    username: Optional[str] = None
    host: Optional[Host] = None
    port: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConnection":
        provider = data.get("provider")
        return cls(
            connection_string=data["connection_string"],
            provider=DatabaseProvider(provider) if provider else None,
            database=data.get("database"),
            instance=data.get("instance"),
            username=data.get("username"),
            host=Host.from_dict(data.get("host")),
            port=data.get("port"),
        )


@dataclass
class EndpointConnection:
    address: str
    host: Optional[Host] = None
    username: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EndpointConnection":
        return cls(
            address=data["address"],
            host=Host.from_dict(data.get("host")),
            username=data.get("username"),
        )


@dataclass
class Application:
    """A deployed application and everything linked to it during discovery."""
    name: str
    main_binary: BinaryIdentity
    role: Optional[Role] = None
    environment: str = ""
    host: Optional[Host] = None
    dependencies: List[BinaryIdentity] = field(default_factory=list)
    website: Optional[Website] = None
    os_service: Optional[OsService] = None
    database_connections: List[DatabaseConnection] = field(default_factory=list)
    endpoint_connections: List[EndpointConnection] = field(default_factory=list)
    url: Optional[str] = None

    @property
    def binary_folder(self) -> str:
        return ntpath.dirname(self.main_binary.path)

    def to_dict(self) -> Dict[str, Any]:
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Application":
        role = data.get("role")
        website = data.get("website")
        os_service = data.get("os_service")
        return cls(
            name=data["name"],
            main_binary=BinaryIdentity.from_dict(data["main_binary"]),
            role=Role.parse(role) if role else None,
            environment=data.get("environment", ""),
            host=Host.from_dict(data.get("host")),
            dependencies=[BinaryIdentity.from_dict(d) for d in data.get("dependencies", [])],
            website=Website.from_dict(website) if website else None,
            os_service=OsService.from_dict(os_service) if os_service else None,
            database_connections=[DatabaseConnection.from_dict(c) for c in data.get("database_connections", [])],
            endpoint_connections=[EndpointConnection.from_dict(c) for c in data.get("endpoint_connections", [])],
            url=data.get("url"),
        )


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def to_dict(record: Any) -> Dict[str, Any]:
    """Convert a record into JSON-ready primitives, keeping field order."""
    return _plain(asdict(record))

"""
Configuration Parsers

Extract database connections, endpoint connections and hosted-site records
from application and web-server configuration files.
"""

import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple, Union

from .models import (
    Host,
    DatabaseConnection,
    DatabaseProvider,
    EndpointConnection,
    Website,
    WebsiteApplication,
    WebsiteApplicationPool,
    WebsiteBinding,
)

logger = logging.getLogger(__name__)

CONNECTION_STRING_PATTERN = re.compile(r'connectionstring(" value)?(\s)?=(\s)?"([^"]*)', re.IGNORECASE)

# Relational connection string keywords, mapped to a canonical name.
SQL_KEYWORDS: Dict[str, str] = {}
for _canonical, _synonyms in {
    "data source": ["data source", "server", "address", "addr", "network address"],
    "initial catalog": ["initial catalog", "database"],
    "user id": ["user id", "uid", "user"],
    "password": ["password", "pwd"],
    "integrated security": ["integrated security", "trusted_connection"],
    "connect timeout": ["connect timeout", "connection timeout", "timeout"],
    "application name": ["application name", "app"],
    "workstation id": ["workstation id", "wsid"],
    "current language": ["current language", "language"],
    "network library": ["network library", "net", "network"],
    "persist security info": ["persist security info", "persistsecurityinfo"],
    "multipleactiveresultsets": ["multipleactiveresultsets"],
    "multisubnetfailover": ["multisubnetfailover"],
    "applicationintent": ["applicationintent", "application intent"],
    "attachdbfilename": ["attachdbfilename", "extended properties", "initial file name"],
    "asynchronous processing": ["asynchronous processing", "async"],
    "connection lifetime": ["connection lifetime", "load balance timeout"],
    "connectretrycount": ["connectretrycount", "connect retry count"],
    "connectretryinterval": ["connectretryinterval", "connect retry interval"],
    "context connection": ["context connection"],
    "encrypt": ["encrypt"],
    "enlist": ["enlist"],
    "failover partner": ["failover partner"],
    "max pool size": ["max pool size"],
    "min pool size": ["min pool size"],
    "packet size": ["packet size"],
    "pooling": ["pooling"],
    "replication": ["replication"],
    "transaction binding": ["transaction binding"],
    "trustservercertificate": ["trustservercertificate", "trust server certificate"],
    "type system version": ["type system version"],
    "user instance": ["user instance"],
    "column encryption setting": ["column encryption setting"],
    "authentication": ["authentication"],
}.items():
    for _synonym in _synonyms:
        SQL_KEYWORDS[_synonym] = _canonical

PROTOCOL_PREFIXES = ("tcp:", "np:", "lpc:")


def parse_sql_connection_string(connection_string: str) -> Dict[str, str]:
    """
    Split a relational connection string into canonical keyword/value pairs.

    Values may be quoted with single or double quotes (a doubled quote inside
    escapes it). Unknown keywords raise ``ValueError``.
    """
    values: Dict[str, str] = {}
    i, n = 0, len(connection_string)
    while i < n:
        while i < n and connection_string[i] in " ;":
            i += 1
        if i >= n:
            break
        eq = connection_string.find("=", i)
        if eq < 0:
            raise ValueError(f"Format of the connection string is invalid near position {i}")
        keyword = " ".join(connection_string[i:eq].lower().split())
        i = eq + 1
        while i < n and connection_string[i] == " ":
            i += 1
        if i < n and connection_string[i] in "'\"":
            quote = connection_string[i]
            i += 1
            chars = []
            while True:
                if i >= n:
                    raise ValueError(f"Unterminated quoted value for keyword '{keyword}'")
                if connection_string[i] == quote:
                    if i + 1 < n and connection_string[i + 1] == quote:
                        chars.append(quote)
                        i += 2
                        continue
                    i += 1
                    break
                chars.append(connection_string[i])
                i += 1
            value = "".join(chars)
            while i < n and connection_string[i] != ";":
                if connection_string[i] != " ":
                    raise ValueError(f"Unexpected characters after quoted value for keyword '{keyword}'")
                i += 1
        else:
            end = connection_string.find(";", i)
            end = n if end < 0 else end
            value = connection_string[i:end].strip()
            i = end
        canonical = SQL_KEYWORDS.get(keyword)
        if canonical is None:
            raise ValueError(f"Keyword not supported: '{keyword}'")
        values[canonical] = value
    return values


def split_data_source(data_source: str) -> Tuple[Host, Optional[str], Optional[int]]:
    """
    Resolve host, named instance and port from a data source token.

    ``host.domain\\instance,port`` -> (Host(host, domain), instance, port)
    """
    source = data_source.strip()
    for prefix in PROTOCOL_PREFIXES:
        if source.lower().startswith(prefix):
            source = source[len(prefix):]
            break

    host = None
    instance = None
    port = None
    if "," in source:
        port = int(source.split(",")[-1].strip())
        host = source.split(",")[0].lower()
    if "\\" in source:
        host = source.split("\\")[0].lower()
        instance = source.split("\\")[-1].split(",")[0].lower()
    if not host or not host.strip():
        host = source.lower()
    name, _, domain = host.strip().partition(".")
    return Host(name=name, domain=domain), instance, port


def _pairs(text: str, separator: str) -> Dict[str, str]:
    pairs = {}
    for token in text.split(separator):
        if not token:
            continue
        parts = token.split("=")
        pairs[parts[0].strip().lower()] = parts[-1].strip()
    return pairs


def parse_database_connection(connection_string: str) -> DatabaseConnection:
    """
    Classify and parse one connection string.

    Raises on any malformed input; callers degrade the record instead.
    """
    if connection_string.lower().startswith("url"):
        pairs = _pairs(connection_string, ";")
        return DatabaseConnection(
            provider=DatabaseProvider.RAVENDB,
            connection_string=connection_string,
            database=pairs["database"],
            instance=pairs["url"],
            host=Host.parse(pairs["url"]),
        )

    if connection_string.lower().startswith("msldap://"):
        url = connection_string[:connection_string.rindex("/")].lower().replace("msldap", "http")
        last_segment = [s for s in connection_string.split("/") if s][-1]
        pairs = _pairs(last_segment, ",")
        return DatabaseConnection(
            provider=DatabaseProvider.LDAP,
            connection_string=connection_string,
            database=pairs["ou"],
            instance=pairs["cn"],
            host=Host.parse(url),
        )

    values = parse_sql_connection_string(connection_string)
    host, instance, port = split_data_source(values.get("data source", ""))
    return DatabaseConnection(
        provider=DatabaseProvider.MSSQL,
        connection_string=connection_string,
        database=values.get("initial catalog"),
        username=values.get("user id"),
        host=host,
        port=port,
        instance=instance,
    )


_HOST_HINT = re.compile(r"(?:data source|server|address|addr|network address|url)\s*=\s*([^;,\\]+)", re.IGNORECASE)


def _host_hint(connection_string: str) -> Optional[Host]:
    match = _HOST_HINT.search(connection_string)
    if match:
        return Host.parse(match.group(1))
    return None


def find_database_connections(text: str, source: str = "<config>") -> List[DatabaseConnection]:
    """Find and parse every connection string declared in a configuration text."""
    connections = []
    for match in CONNECTION_STRING_PATTERN.finditer(text):
        connection_string = match.group(4)
        try:
            connections.append(parse_database_connection(connection_string))
        except Exception as e:
            logger.warning(f"Failed to parse connection string: '{connection_string}' from config: {source}")
            logger.error(f"Connection string parse error: {e}")
            connections.append(DatabaseConnection(
                connection_string=connection_string,
                host=_host_hint(connection_string),
            ))
    return connections


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local_name(child.tag) == name:
            return child
    return None


def _descendants(root: ET.Element, name: str):
    return [e for e in root.iter() if _local_name(e.tag) == name]


def parse_endpoint(element: ET.Element) -> EndpointConnection:
    address = element.attrib.get("address")
    if address is None:
        raise ValueError("endpoint element has no address attribute")
    username = None
    identity = _child(element, "identity")
    if identity is not None:
        upn = _child(identity, "userPrincipalName")
        if upn is not None:
            username = upn.attrib.get("value")
    return EndpointConnection(address=address, host=Host.parse(address), username=username)


def find_endpoint_connections(text: Union[str, bytes], source: str = "<config>") -> List[EndpointConnection]:
    """
    Find outbound endpoint declarations in an XML configuration text.

    Raises:
        ET.ParseError: the document itself is not well-formed.
    """
    root = ET.fromstring(text)
    connections = []
    for element in _descendants(root, "endpoint"):
        try:
            connections.append(parse_endpoint(element))
        except Exception as e:
            logger.warning(f"Failed to parse endpoint from element in config: {source}.")
            logger.error(f"Endpoint parse error: {e}")
    return connections


def parse_application_pools(root: ET.Element) -> List[WebsiteApplicationPool]:
    sections = _descendants(root, "applicationPools")
    if not sections:
        return []
    pools = []
    for pool in sections[0]:
        if _local_name(pool.tag) != "add":
            continue
        process_model = _child(pool, "processModel")
        pools.append(WebsiteApplicationPool(
            name=pool.attrib["name"],
            runtime_version=pool.attrib.get("managedRuntimeVersion"),
            pipeline_mode=pool.attrib.get("managedPipelineMode"),
            username=process_model.attrib.get("userName") if process_model is not None else None,
        ))
    return pools


def parse_websites(root: ET.Element, host: Host) -> List[Website]:
    sites = []
    for site in _descendants(root, "site"):
        applications = []
        for application in site:
            if _local_name(application.tag) != "application":
                continue
            directory = _child(application, "virtualDirectory")
            applications.append(WebsiteApplication(
                path=application.attrib["path"],
                physical_path=directory.attrib["physicalPath"] if directory is not None else "",
                application_pool=application.attrib.get("applicationPool"),
            ))
        bindings = [
            WebsiteBinding(protocol=b.attrib["protocol"], binding_information=b.attrib["bindingInformation"])
            for b in _descendants(site, "binding")
        ]
        sites.append(Website(
            host=host,
            id=int(site.attrib["id"]),
            name=site.attrib["name"],
            applications=applications,
            bindings=bindings,
        ))
    return sites


def parse_site_config(text: Union[str, bytes], host: Host) -> List[Website]:
    """
    Parse a web server master site configuration into websites, each enriched
    with the application pools its applications run in.
    """
    root = ET.fromstring(text)
    pools = parse_application_pools(root)
    sites = parse_websites(root, host)
    for site in sites:
        used = {a.application_pool for a in site.applications}
        site.application_pools = [p for p in pools if p.name in used]
    return sites

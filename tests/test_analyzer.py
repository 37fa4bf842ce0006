"""Tests for application analysis and linkage."""

import os

from drift_agent.discovery.analyzer import (
    Analyzer,
    config_search_root,
    find_service_binary,
    find_web_binary,
    link_os_service,
    link_website,
)
from drift_agent.models import (
    Application,
    BinaryIdentity,
    Host,
    OsService,
    Role,
    SearchPath,
    VersionInfo,
    Website,
    WebsiteApplication,
    WebsiteBinding,
)
from conftest import build_pe_image

HOST = Host("host1", "corp.local")
WEB_SHARE = r"\\host1\d$\Apps\env1\web"
SVC_SHARE = r"\\host1\D$\Apps\env1\svc"


def _search_path(role: Role, share: str, path=None, host: Host = HOST) -> SearchPath:
    return SearchPath(host=host, role=role, environment="env1", share=share, path=path)


def _app(binary_path: str, role: Role) -> Application:
    return Application(
        name="MyApp",
        role=role,
        host=HOST,
        main_binary=BinaryIdentity(name="MyApp", path=binary_path, version=VersionInfo("1.0.0.0")),
    )


class TestMainBinaryHeuristics:

    def test_bootstrap_inherits_declaration(self, tmp_path):
        app_path = tmp_path / "Storefront"
        app_path.mkdir()
        (app_path / "Global.asax").write_text(
            '<%@ Application Codebehind="Global.asax.cs" Inherits="MyApp.Global" Language="C#" %>'
        )

        assert find_web_binary(str(app_path)) == os.path.join(str(app_path), "bin", "MyApp.dll")

    def test_bin_folder_fallback(self, tmp_path):
        bin_dir = tmp_path / "Orders" / "bin"
        bin_dir.mkdir(parents=True)
        for name in ("Newtonsoft.Json.dll", "Orders.Core.dll", "Orders.WebApi.dll"):
            (bin_dir / name).write_bytes(b"")

        assert find_web_binary(str(tmp_path / "Orders")) == str(bin_dir / "Orders.WebApi.dll")

    def test_no_candidate(self, tmp_path):
        (tmp_path / "Empty").mkdir()

        assert find_web_binary(str(tmp_path / "Empty")) is None

    def test_service_config_names_binary(self, tmp_path):
        (tmp_path / "MySvc.exe.config").write_text("<configuration />")
        (tmp_path / "MySvc.exe").write_bytes(b"")

        assert find_service_binary(str(tmp_path)) == str(tmp_path / "MySvc.exe")


class TestLinkWebsite:

    def _site(self, binding: str) -> Website:
        return Website(
            host=HOST,
            id=1,
            name="Default Web Site",
            applications=[
                WebsiteApplication("/", r"d:\Sites\Root"),
                WebsiteApplication("/myapp", r"D:\Apps\env1\web\MyApp"),
            ],
            bindings=[WebsiteBinding("net.tcp", "808:*"), WebsiteBinding("http", binding)],
        )

    def test_links_by_physical_path(self):
        app = _app(r"\\host1\d$\Apps\env1\web\MyApp\bin\MyApp.dll", Role.WEB)

        link_website(app, [self._site("*:8080:myapp.corp.local")], _search_path(Role.WEB, WEB_SHARE))

        assert app.website.name == "Default Web Site"
        assert app.url == "http://myapp.corp.local:8080/myapp"

    def test_localhost_header_falls_back_to_host(self):
        app = _app(r"\\host1\d$\Apps\env1\web\MyApp\bin\MyApp.dll", Role.WEB)

        link_website(app, [self._site("*:80:localhost")], _search_path(Role.WEB, WEB_SHARE))

        assert app.url == "http://host1:80/myapp"

    def test_other_host_ignored(self):
        app = _app(r"\\host1\d$\Apps\env1\web\MyApp\bin\MyApp.dll", Role.WEB)

        link_website(app, [self._site("*:80:")], _search_path(Role.WEB, WEB_SHARE, host=Host("host2", "corp.local")))

        assert app.website is None
        assert app.url is None

    def test_explicit_host_path_used_for_plain_share(self, tmp_path):
        share = tmp_path / "apps" / "env1"
        app = _app(str(share / "MyApp" / "bin" / "MyApp.dll"), Role.WEB)
        site = Website(
            host=HOST,
            id=2,
            name="Apps",
            applications=[WebsiteApplication("/", r"d:\apps\env1\MyApp")],
            bindings=[WebsiteBinding("http", "*:80:")],
        )

        link_website(app, [site], _search_path(Role.WEB, str(share), path=r"d:\apps\env1"))

        assert app.website.name == "Apps"
        assert app.url == "http://host1:80/"


class TestLinkOsService:

    def test_substring_match(self):
        app = _app(r"\\host1\D$\Apps\env1\svc\MySvc\MySvc.exe", Role.SERVICE)
        services = [
            OsService(host=HOST, name="Spooler", path=r"C:\Windows\System32\spoolsv.exe"),
            OsService(host=HOST, name="MySvc", path=r'"D:\Apps\env1\svc\MySvc\MySvc.exe" -service'),
        ]

        link_os_service(app, services, _search_path(Role.SERVICE, SVC_SHARE))

        assert app.os_service.name == "MySvc"

    def test_unrelated_path_not_linked(self):
        app = _app(r"\\host1\D$\Apps\env1\svc\MySvc\MySvc.exe", Role.SERVICE)
        services = [OsService(host=HOST, name="Other", path=r"D:\Apps\env2\svc\Other\Other.exe")]

        link_os_service(app, services, _search_path(Role.SERVICE, SVC_SHARE))

        assert app.os_service is None

    def test_explicit_host_path(self):
        app = _app(r"\\fileserver\apps\env1\MySvc\MySvc.exe", Role.SERVICE)
        services = [OsService(host=HOST, name="MySvc", path=r"E:\Deploy\env1\MySvc\MySvc.exe")]

        link_os_service(app, services, _search_path(Role.SERVICE, r"\\fileserver\apps\env1", path=r"E:\Deploy\env1"))

        assert app.os_service.name == "MySvc"


def test_config_search_root():
    web = _app(os.path.join("apps", "MyApp", "bin", "MyApp.dll"), Role.WEB)
    service = _app(os.path.join("apps", "MySvc", "MySvc.exe"), Role.SERVICE)

    assert config_search_root(web) == os.path.join("apps", "MyApp")
    assert config_search_root(service) == os.path.join("apps", "MySvc")


def test_resolve_collects_dependencies_and_connections(tmp_path, make_assembly):
    app_path = tmp_path / "share" / "Orders"
    main = make_assembly(app_path / "bin" / "Contoso.Orders.WebApi.dll")
    make_assembly(app_path / "bin" / "Contoso.Core.dll")
    make_assembly(app_path / "bin" / "Newtonsoft.Json.dll")
    (app_path / "bin" / "Contoso.Broken.dll").write_bytes(b"MZ")
    image = build_pe_image()
    at = image.index("VS_VERSION_INFO".encode("utf-16-le"))
    (app_path / "bin" / "Contoso.Surrogate.dll").write_bytes(image[:at] + b"\x00\xd8" + image[at + 2:])
    (app_path / "Web.config").write_text(
        '<configuration><connectionStrings>'
        '<add name="db" connectionString="Data Source=sql1.corp.local,1433;Initial Catalog=Orders" />'
        '</connectionStrings><system.serviceModel><client>'
        '<endpoint address="http://pricing.corp.local/Price.svc" />'
        '</client></system.serviceModel></configuration>'
    )
    search_path = SearchPath(host=HOST, role=Role.WEB, environment="prod", share=str(tmp_path / "share"))

    app = Analyzer(["Contoso."]).resolve(str(main), search_path)

    assert app.name == "Contoso.Orders.WebApi"
    assert app.environment == "prod"
    assert app.host == HOST
    assert [d.name for d in app.dependencies] == ["Contoso.Core"]
    assert app.database_connections[0].host == Host("sql1", "corp.local")
    assert app.endpoint_connections[0].host == Host("pricing", "corp.local")
    assert app.website is None

"""Type definitions for provisionvm."""

from typing import Literal, TypedDict

SiteType = Literal["static", "laravel", "nodejs"]
DbFlavor = Literal["laravel", "nodejs"]
AppType = Literal["wordpress", "magento", "laravel", "php", "custom"]


class SiteInfo(TypedDict, total=False):
    """Site information stored in a host record."""

    name: str
    type: SiteType
    domain: str
    web_root: str
    port: int
    php_version: str
    node_version: str
    database: str


class HostData(TypedDict, total=False):
    """Host data stored in .host.json files."""

    ip: str
    ssh_user: str
    sites: list[SiteInfo]


class SiteConfig(TypedDict, total=False):
    """Inputs collected for a site provisioning run."""

    app_name: str
    server_names: str
    php_version: str | None
    node_version: str | None
    port: int
    install_mysql: bool
    reinstall_mysql: bool | None
    install_redis: bool
    install_supervisor: bool
    install_pm2: bool
    install_ssl: bool
    email: str | None


class CertReport(TypedDict, total=False):
    """Result of a certificate validation."""

    subject: str
    issuer: str
    expires: str
    days_left: int

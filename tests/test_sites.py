"""Full provisioning sequences against a fake host."""

import pytest

from provisionvm import server
from provisionvm.sites import SITE_CLASSES, LaravelSite, NodejsSite, StaticSite
from provisionvm.types import HostData, SiteInfo

IP = "203.0.113.10"
HOST = {"ip": IP, "ssh_user": "root", "sites": []}


@pytest.fixture
def web_host(fake_host, monkeypatch):
    monkeypatch.setattr(server, "resolve_dns_a", lambda domain: None)
    fake_host.on(r"apt list --upgradable", stdout="0\n")
    fake_host.on(r"ufw status", stdout="Status: inactive\n")
    fake_host.on(r"hostname -I", stdout="10.0.0.5\n")
    fake_host.on(r"curl", stdout="200")
    return fake_host


def index_of(host, pattern: str) -> int:
    import re

    return next(i for i, cmd in enumerate(host.commands) if re.search(pattern, cmd))


def test_site_classes():
    assert SITE_CLASSES == {"static": StaticSite, "laravel": LaravelSite, "nodejs": NodejsSite}


def test_static_site_with_php(web_host):
    site = StaticSite(HOST, {"app_name": "example.com", "server_names": "example.com www.example.com", "php_version": "8.3"})
    site.provision()

    conf = web_host.files["/etc/nginx/sites-available/example.com.conf"]
    assert "root /var/www/example.com;" in conf
    assert "php8.3-fpm.sock" in conf
    assert web_host.files["/var/www/example.com/info.php"] == "<?php phpinfo(); ?>\n"
    assert "PHP is enabled" in web_host.files["/var/www/example.com/index.html"]
    assert site.test_results == "Local: ✓ Working (Status: 200) | IP: ✓ Working"
    assert not web_host.ran("certbot")


def test_static_site_plain(web_host):
    site = StaticSite(HOST, {"app_name": "docs", "server_names": "docs.example.com"})
    site.provision()
    assert "Static website is live!" in web_host.files["/var/www/docs/index.html"]
    assert "fastcgi_pass" not in web_host.files["/etc/nginx/sites-available/docs.conf"]
    assert ("PHP Support", "no") in site.summary()


def test_ssl_requested_without_dns_is_skipped(web_host, caplog):
    site = StaticSite(HOST, {"app_name": "docs", "server_names": "docs.example.com", "install_ssl": True})
    site.provision()
    assert not site.ssl_installed
    assert not web_host.ran("certbot")
    assert "Skipping SSL setup - DNS not resolved for domain" in caplog.text


def test_ssl_with_dns(web_host, monkeypatch):
    monkeypatch.setattr(server, "resolve_dns_a", lambda domain: "198.51.100.1")
    site = StaticSite(HOST, {"app_name": "docs", "server_names": "docs.example.com", "install_ssl": True})
    site.provision()
    assert site.dns_resolved and site.ssl_installed
    assert web_host.ran(r"certbot --nginx -d docs.example.com .*--email admin@docs.example.com")
    assert site.test_results == "HTTPS: ✓ Working | HTTP: ✓ Working"


def test_laravel_sequence(web_host):
    config = {
        "app_name": "my-shop",
        "server_names": "shop.example.com",
        "php_version": "8.3",
        "install_mysql": True,
        "reinstall_mysql": False,
        "install_redis": True,
        "install_supervisor": True,
    }
    site = LaravelSite(HOST, config)
    site.provision()

    assert index_of(web_host, r"swapon --show") < index_of(web_host, r"apt-get update")
    assert web_host.ran(r"apt-get upgrade -y")
    assert site.database.db.db_name == "my_shop_db"

    page = web_host.files["/var/www/my-shop/public/index.php"]
    assert "<code>my_shop_db</code>" in page
    assert "/root/my-shop_mysql_credentials.txt" in page
    assert "body { font-family" in page
    assert web_host.ran(r"mkdir -p /var/www/my-shop/public /var/www/my-shop/storage/logs")
    assert web_host.ran(r"chmod -R 775 /var/www/my-shop/storage")

    conf = web_host.files["/etc/nginx/sites-available/my-shop.conf"]
    assert "root /var/www/my-shop/public;" in conf


def test_laravel_skips_optional_components(web_host, caplog):
    site = LaravelSite(HOST, {"app_name": "blog", "server_names": "blog.example.com", "php_version": "8.2"})
    site.provision()
    assert site.database is None
    assert "MySQL installation skipped by user choice" in caplog.text
    assert "/etc/supervisor/conf.d/blog-worker.conf" not in web_host.files
    assert "<code>blog_db</code>" in web_host.files["/var/www/blog/public/index.php"]


def test_nodejs_sequence(web_host):
    web_host.on(r"^node --version$", stdout="v20.11.1\n")
    web_host.on(r"curl", stdout="502")
    config = {
        "app_name": "api",
        "server_names": "api.example.com",
        "node_version": "20",
        "port": 4000,
        "install_pm2": True,
    }
    site = NodejsSite(HOST, config)
    site.provision()

    conf = web_host.files["/etc/nginx/sites-available/api.conf"]
    assert "proxy_pass http://127.0.0.1:4000/;" in conf
    page = web_host.files["/var/www/api/index.html"]
    assert "port 4000" in page
    assert "<code>nextjs_db</code>" in page
    assert site.test_results.startswith("Local: ✓ Working (Status: 502)")


def test_record_site():
    host = {"ip": IP, "sites": []}
    site = NodejsSite(host, {"app_name": "api", "server_names": "api.example.com", "node_version": "22"})
    site.record(host)
    assert host["sites"] == [
        {
            "name": "api",
            "type": "nodejs",
            "domain": "api.example.com",
            "web_root": "/var/www/api",
            "node_version": "22",
        }
    ]


def test_record_nodejs_port():
    host = {"ip": IP, "sites": []}
    site = NodejsSite(host, {"app_name": "api", "server_names": "api.example.com", "node_version": "22", "port": 4000})
    site.record(host)
    assert host["sites"][0]["port"] == 4000


def test_summary_rows():
    site = LaravelSite(HOST, {"app_name": "shop", "server_names": "shop.com", "php_version": "8.3", "install_redis": True})
    rows = dict(site.summary())
    assert rows["PHP Version"] == "php8.3"
    assert rows["Redis"] == "yes"
    assert rows["MySQL"] == "no"
    assert rows["Web Root"] == "/var/www/shop"


def test_recorded_fields_match_host_record_types():
    host = server.resolve_host(IP)
    site = LaravelSite(host, {"app_name": "shop", "server_names": "shop.com", "php_version": "8.3"})
    site.record(host)
    server.save_host("web1", host)
    loaded = server.load_host("web1")
    assert set(loaded) <= set(HostData.__annotations__)
    assert set(loaded["sites"][0]) <= set(SiteInfo.__annotations__)

import pytest

from provisionvm import nginx, server

IP = "203.0.113.10"


def test_static_config_without_php():
    config = nginx.generate_static_config("example.com", "example.com www.example.com", "/var/www/example.com")
    assert "server_name example.com www.example.com;" in config
    assert "index index.html index.htm;" in config
    assert "fastcgi_pass" not in config
    assert config.rstrip().endswith("}")
    assert config.count("{") == config.count("}")


def test_static_config_with_php():
    config = nginx.generate_static_config("example.com", "example.com", "/var/www/example.com", php_pkg="php8.3")
    assert "index index.html index.htm index.php;" in config
    assert "fastcgi_pass unix:/var/run/php/php8.3-fpm.sock;" in config
    assert "SCRIPT_FILENAME $document_root$fastcgi_script_name" in config
    assert "location ~ /\\.ht {" in config
    assert config.count("{") == config.count("}")


def test_laravel_config_single_www_domain_kept_as_is():
    config = nginx.generate_laravel_config("www.shop.com", "/var/www/shop", "php8.2")
    assert "server_name www.shop.com;" in config
    assert "www.www." not in config


def test_laravel_config_adds_www_for_single_domain():
    config = nginx.generate_laravel_config("shop.com", "/var/www/shop", "php8.2")
    assert "server_name shop.com www.shop.com;" in config
    assert "root /var/www/shop/public;" in config
    assert "try_files $uri $uri/ /index.php?$query_string;" in config
    assert "fastcgi_pass unix:/var/run/php/php8.2-fpm.sock;" in config
    assert "location ~ /\\.(ht|env) {" in config


def test_laravel_config_keeps_explicit_names():
    config = nginx.generate_laravel_config("shop.com api.shop.com", "/var/www/shop", "php8.2")
    assert "server_name shop.com api.shop.com;" in config


def test_proxy_config():
    config = nginx.generate_proxy_config("api", "api.example.com", "/var/www/api", port=4000)
    assert "proxy_pass http://127.0.0.1:4000/;" in config
    assert "access_log /var/log/nginx/api_access.log;" in config
    assert "proxy_set_header Upgrade $http_upgrade;" in config
    assert config.count("{") == config.count("}")


def test_install_nginx_skips_when_present(fake_host):
    nginx.install_nginx(IP)
    assert not fake_host.ran("apt-get install")


def test_install_nginx_fresh(fresh_host):
    nginx.install_nginx(IP)
    assert fresh_host.ran(r"apt-get install -y nginx$")
    assert fresh_host.ran(r"sudo systemctl enable nginx")
    assert fresh_host.ran(r"sudo systemctl start nginx")


def test_write_and_activate(fake_host):
    fake_host.on(r"ufw status", stdout="Status: inactive\n")
    path = nginx.write_site_config(IP, "shop", "server {}")
    nginx.activate_site(IP, "shop")
    assert path == "/etc/nginx/sites-available/shop.conf"
    assert fake_host.files[path] == "server {}\n"
    assert fake_host.ran(r"ln -sf /etc/nginx/sites-available/shop.conf /etc/nginx/sites-enabled/shop.conf")
    assert fake_host.ran(r"rm -f /etc/nginx/sites-enabled/default")
    assert fake_host.ran(r"systemctl reload nginx")


def test_activate_config_test_failure(fake_host):
    fake_host.fail(r"^sudo nginx -t$")
    with pytest.raises(SystemExit):
        nginx.activate_site(IP, "shop")
    assert not fake_host.ran("reload nginx")


def test_ssl_skipped_without_dns(fake_host, monkeypatch):
    monkeypatch.setattr(server, "resolve_dns_a", lambda domain: None)
    assert nginx.setup_ssl(IP, "example.com") is False
    assert not fake_host.ran("certbot")


def test_ssl_certbot_command(fake_host):
    installed = nginx.setup_ssl(
        IP, "example.com www.example.com", email="ops@example.com", staging=True, dns_resolved=True
    )
    assert installed
    assert fake_host.ran(
        r"^sudo certbot --nginx --staging -d example.com,www.example.com "
        r"--non-interactive --agree-tos --email ops@example.com$"
    )


def test_ssl_default_email(fake_host, monkeypatch):
    monkeypatch.setenv("PROVISIONVM_EMAIL", "certs@example.org")
    nginx.setup_ssl(IP, "example.com", dns_resolved=True)
    assert fake_host.ran(r"--email certs@example.org$")


def test_ssl_failure_is_not_fatal(fake_host):
    fake_host.fail(r"certbot --nginx")
    assert nginx.setup_ssl(IP, "example.com", dns_resolved=True) is False


def test_website_with_dns_and_ssl(fake_host):
    fake_host.on(r"curl .*https://example.com", stdout="200")
    fake_host.on(r"curl .*'?http://example.com", stdout="301")
    summary = nginx.test_website(IP, "example.com", dns_resolved=True, ssl=True)
    assert summary == "HTTPS: ✓ Working | HTTP: ✓ Working"


def test_website_local_only(fake_host):
    fake_host.on(r"hostname -I", stdout="10.0.0.5 10.0.0.6\n")
    fake_host.on(r"curl .*http://localhost", stdout="200")
    fake_host.on(r"curl .*http://10.0.0.5", stdout="404")
    summary = nginx.test_website(IP, "example.com", dns_resolved=False, ssl=False)
    assert summary == "Local: ✓ Working (Status: 200) | IP: ✗ Failed (404)"


def test_website_local_accepts_extra_statuses(fake_host):
    fake_host.on(r"curl", stdout="502")
    summary = nginx.test_website(
        IP,
        "example.com",
        dns_resolved=False,
        ssl=False,
        local_ok=nginx.OK_STATUSES + ("502",),
        test_server_ip=False,
    )
    assert summary == "Local: ✓ Working (Status: 502)"

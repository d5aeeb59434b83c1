#!/usr/bin/env python3
"""Provision Linux web hosts over SSH.

Prerequisites: SSH key access to the host as root or a user with passwordless sudo.

Usage: provisionvm <noun> <verb> [options]

Examples:
    provisionvm host add web1 203.0.113.10
    provisionvm site static web1 --app-name example.com --server-names "example.com www.example.com"
    provisionvm site laravel web1 --app-name shop --php-version 8.3 --mysql --redis
    provisionvm site nodejs 203.0.113.10 --app-name api --node-version 20 --pm2
    provisionvm swap resize web1 --size 4G
    provisionvm ssl to-pfx ./bundle.zip
    provisionvm diagnose web1
"""

import json
from pathlib import Path

import cyclopts
from rich import print
from rich.prompt import Confirm, Prompt

from .diagnostics import APP_TYPES, TIME_RANGES, readable_paths, run_diagnostics, time_range
from .fail2ban import banned_ips, check_status, setup_fail2ban, unban_ip
from .mysql import install_database
from .server import (
    check_host_reachable,
    get_host_sites,
    is_valid_ip,
    load_host,
    resolve_host,
    save_host,
    ssh_ok,
    verify_host,
)
from .sites import SITE_CLASSES, BaseSite
from .ssl_tools import (
    PFX_OUTPUT_DIR,
    SSL_OUTPUT_DIR,
    bundle_to_pfx,
    pfx_to_bundle,
    validate_bundle,
    validate_cert_file,
    validate_domain,
)
from .stack import NODE_VERSIONS, validate_node_version, validate_php_version
from .swap import resize_swap, setup_swap
from .types import AppType, DbFlavor, HostData, SiteConfig
from .utils import error, get_ssh_user, log, setup_logging, warn

app = cyclopts.App(
    name="provisionvm", help="Provision Linux web hosts over SSH", sort_key=None
)

host_app = cyclopts.App(name="host", help="Manage host records", sort_key=1)
site_app = cyclopts.App(name="site", help="Provision websites", sort_key=2)
mysql_app = cyclopts.App(name="mysql", help="Set up MySQL databases", sort_key=3)
swap_app = cyclopts.App(name="swap", help="Manage swap files", sort_key=4)
fail2ban_app = cyclopts.App(name="fail2ban", help="Configure Fail2ban", sort_key=5)
ssl_app = cyclopts.App(name="ssl", help="Validate and convert SSL certificates", sort_key=6)

app.command(host_app)
app.command(site_app)
app.command(mysql_app)
app.command(swap_app)
app.command(fail2ban_app)
app.command(ssl_app)


def _ask(value: str | None, question: str, **kwargs) -> str:
    return value if value is not None else Prompt.ask(question, **kwargs)


def _ask_bool(value: bool | None, question: str, default: bool = False) -> bool:
    return value if value is not None else Confirm.ask(question, default=default)


def _target(target: str) -> HostData:
    host = resolve_host(target)
    if not check_host_reachable(host["ip"], host["ssh_user"]):
        error(f"Cannot reach '{target}' ('{host['ip']}') via SSH as '{host['ssh_user']}'")
    return host


def _is_host_record(target: str) -> bool:
    return not (is_valid_ip(target) or target == "localhost")


def _confirm_summary(site: BaseSite, yes: bool) -> bool:
    rows = site.summary()
    width = max(len(label) for label, _ in rows)
    print()
    print("================= SUMMARY =================")
    for label, value in rows:
        print(f"{label.ljust(width)} : {value}")
    print("===========================================")
    print()
    if yes or Confirm.ask("Proceed with setup?", default=False):
        return True
    print("Aborted by user.")
    return False


def _run_site(target: str, host: HostData, site: BaseSite, yes: bool):
    if not _confirm_summary(site, yes):
        return
    if site.site_type == "static":
        site.provision()
    else:
        site.provision(
            ask_reinstall=lambda: Confirm.ask(
                "MySQL server is already installed. Remove and reinstall?", default=False
            ),
            ask_password=lambda: Prompt.ask("Enter existing MySQL root password", password=True),
        )

    if _is_host_record(target):
        record = load_host(target)
        site.record(record)
        save_host(target, record)


@host_app.command(name="add")
def add_host(name: str, ip: str, *, ssh_user: str | None = None):
    """Create or update a host record (<name>.host.json).

    :param name: Host name used as the record's file prefix
    :param ip: Host IPv4 address
    :param ssh_user: SSH user (default: PROVISIONVM_SSH_USER or root)
    """
    if not is_valid_ip(ip):
        error(f"Invalid IP address: '{ip}'")
    path = Path(f"{name}.host.json")
    data = load_host(name) if path.exists() else {"sites": []}
    data["ip"] = ip
    data["ssh_user"] = ssh_user or get_ssh_user()
    save_host(name, data)
    log(f"Saved host '{name}' ('{ip}') to '{path}'")


@host_app.command(name="show")
def show_host(target: str):
    """Print a host record.

    :param target: Host name or IP address
    """
    print(json.dumps(resolve_host(target), indent=2))


@host_app.command(name="sites")
def list_host_sites(target: str):
    """List sites provisioned on the host.

    :param target: Host name or IP address
    """
    host = resolve_host(target)
    sites = get_host_sites(host)

    if not sites:
        print(f"No sites tracked for host '{target}'")
        return

    print(f"Sites on {target} ({host['ip']}):")
    for site in sites:
        port_info = f" (port {site['port']})" if site.get("port") else ""
        domain = f" {site['domain']}" if site.get("domain") else ""
        print(f"  - {site['name']}: {site['type']}{domain}{port_info}")


@host_app.command(name="check")
def check_host(target: str):
    """Verify host health: SSH, sudo, services, swap, DNS and HTTP.

    :param target: Host name or IP address
    """
    verify_host(target)


@site_app.command(name="static")
def static_site(
    target: str,
    *,
    app_name: str | None = None,
    server_names: str | None = None,
    php: bool | None = None,
    php_version: str | None = None,
    ssl: bool | None = None,
    email: str | None = None,
    yes: bool = False,
):
    """Static website with optional PHP-FPM and Let's Encrypt SSL.

    :param target: Host name or IP address
    :param app_name: Application / domain folder name (e.g. example.com)
    :param server_names: nginx server_name list (e.g. "example.com www.example.com")
    :param php: Enable PHP support
    :param php_version: PHP version 8.0 to 8.4 (implies --php)
    :param ssl: Install a free Let's Encrypt certificate
    :param email: Let's Encrypt email (default: PROVISIONVM_EMAIL or admin@<domain>)
    :param yes: Skip the confirmation prompt
    """
    host = _target(target)
    print("=================================")
    print(" Static Website Setup Tool ")
    print("=================================")

    app_name = _ask(app_name, "Enter application / domain folder name (example.com)")
    server_names = _ask(server_names, "Enter server_name (example.com www.example.com)")
    if php_version is None and _ask_bool(php, "Do you need PHP support?"):
        php_version = Prompt.ask("Enter PHP version (8.4 / 8.3 / 8.2 / 8.1 / 8.0)")
    if php_version is not None and not validate_php_version(php_version, 0):
        error(f"Unsupported PHP version: {php_version}")
    ssl = _ask_bool(ssl, "Do you want to install free SSL (Let's Encrypt)?")

    config: SiteConfig = {
        "app_name": app_name,
        "server_names": server_names,
        "php_version": php_version,
        "install_ssl": ssl,
        "email": email,
    }
    _run_site(target, host, SITE_CLASSES["static"](host, config), yes)


@site_app.command(name="laravel")
def laravel_site(
    target: str,
    *,
    app_name: str | None = None,
    server_names: str | None = None,
    php_version: str | None = None,
    mysql: bool | None = None,
    reinstall_mysql: bool | None = None,
    redis: bool | None = None,
    supervisor: bool | None = None,
    ssl: bool | None = None,
    email: str | None = None,
    yes: bool = False,
):
    """Laravel infrastructure: nginx, PHP-FPM, Composer, Node.js, MySQL, Redis, queue workers.

    :param target: Host name or IP address
    :param app_name: Application name (e.g. myapp)
    :param server_names: Domain name(s) (e.g. "example.com www.example.com")
    :param php_version: PHP version 8.1 to 8.4
    :param mysql: Install MySQL and create the application database
    :param reinstall_mysql: Remove and reinstall an existing MySQL server
    :param redis: Install Redis for caching/sessions
    :param supervisor: Install Supervisor with a queue worker program
    :param ssl: Install a Let's Encrypt certificate
    :param email: Let's Encrypt email (default: PROVISIONVM_EMAIL or admin@<domain>)
    :param yes: Skip the confirmation prompt
    """
    host = _target(target)
    print("=================================")
    print(" Laravel Infrastructure Setup")
    print("=================================")

    app_name = _ask(app_name, "Enter application name (e.g., myapp)")
    server_names = _ask(server_names, "Enter domain name (example.com www.example.com)")
    php_version = _ask(php_version, "Enter PHP version (8.4 / 8.3 / 8.2 / 8.1)")
    if not validate_php_version(php_version, 1):
        error(f"Unsupported PHP version: {php_version} (Laravel requires 8.1+)")

    config: SiteConfig = {
        "app_name": app_name,
        "server_names": server_names,
        "php_version": php_version,
        "install_mysql": _ask_bool(mysql, "Install MySQL database server?"),
        "reinstall_mysql": reinstall_mysql,
        "install_redis": _ask_bool(redis, "Install Redis for caching/sessions?"),
        "install_supervisor": _ask_bool(supervisor, "Install Supervisor for queue workers?"),
        "install_ssl": _ask_bool(ssl, "Install SSL certificate?"),
        "email": email,
    }
    _run_site(target, host, SITE_CLASSES["laravel"](host, config), yes)


@site_app.command(name="nodejs")
def nodejs_site(
    target: str,
    *,
    app_name: str | None = None,
    server_names: str | None = None,
    node_version: str | None = None,
    port: int = 3000,
    mysql: bool | None = None,
    reinstall_mysql: bool | None = None,
    redis: bool | None = None,
    pm2: bool | None = None,
    ssl: bool | None = None,
    email: str | None = None,
    yes: bool = False,
):
    """Node.js (Next.js) infrastructure behind an nginx reverse proxy.

    :param target: Host name or IP address
    :param app_name: Application name (e.g. myapp)
    :param server_names: Domain name(s) (e.g. "example.com www.example.com")
    :param node_version: Node.js major version (18, 20 or 22)
    :param port: Port the app listens on (nginx proxies to 127.0.0.1:<port>)
    :param mysql: Install MySQL and create the application database
    :param reinstall_mysql: Remove and reinstall an existing MySQL server
    :param redis: Install Redis for caching/sessions
    :param pm2: Install PM2 for process management
    :param ssl: Install a Let's Encrypt certificate
    :param email: Let's Encrypt email (default: PROVISIONVM_EMAIL or admin@<domain>)
    :param yes: Skip the confirmation prompt
    """
    host = _target(target)
    print("=================================")
    print(" Next.js Infrastructure Setup")
    print("=================================")

    app_name = _ask(app_name, "Enter application name (e.g., myapp)")
    server_names = _ask(server_names, "Enter domain name (example.com www.example.com)")
    node_version = _ask(node_version, f"Enter Node.js version ({' / '.join(NODE_VERSIONS)})")
    if not validate_node_version(node_version):
        error(
            f"Unsupported Node.js version: {node_version} (Next.js requires 18, 20, or 22)"
        )

    config: SiteConfig = {
        "app_name": app_name,
        "server_names": server_names,
        "node_version": node_version,
        "port": port,
        "install_mysql": _ask_bool(mysql, "Install MySQL database server?"),
        "reinstall_mysql": reinstall_mysql,
        "install_redis": _ask_bool(redis, "Install Redis for caching/sessions?"),
        "install_pm2": _ask_bool(pm2, "Install PM2 for process management?"),
        "install_ssl": _ask_bool(ssl, "Install SSL certificate?"),
        "email": email,
    }
    _run_site(target, host, SITE_CLASSES["nodejs"](host, config), yes)


@mysql_app.command(name="setup")
def mysql_setup(
    target: str,
    app_name: str,
    *,
    flavor: DbFlavor = "laravel",
    reinstall: bool | None = None,
):
    """Install MySQL if needed and create <app>_db and <app>_user.

    :param target: Host name or IP address
    :param app_name: Application name (dashes become underscores in names)
    :param flavor: Credentials file layout (laravel or nodejs)
    :param reinstall: Remove and reinstall an existing MySQL server
    """
    host = _target(target)
    result = install_database(
        host["ip"],
        app_name,
        flavor,
        reinstall=reinstall,
        ask_reinstall=lambda: Confirm.ask(
            "MySQL server is already installed. Remove and reinstall?", default=False
        ),
        ask_password=lambda: Prompt.ask("Enter existing MySQL root password", password=True),
        ssh_user=host["ssh_user"],
    )
    print(f"  Database: {result.db.db_name}")
    print(f"  DB User: {result.db.db_user}")
    print(f"  Credentials: {result.credentials_path}")


@swap_app.command(name="setup")
def swap_setup(target: str, *, size: str = "2G", tune: bool = True):
    """Create a swap file if none is active.

    :param target: Host name or IP address
    :param size: Swap size (e.g. 2G)
    :param tune: Apply vm.swappiness=10 and vm.vfs_cache_pressure=50
    """
    host = _target(target)
    setup_swap(host["ip"], size, tune=tune, ssh_user=host["ssh_user"])


@swap_app.command(name="resize")
def swap_resize(target: str, *, size: str = "4G", path: str = "/swapfile"):
    """Safely recreate the swap file at a new size.

    Aborts when current swap does not fit in free RAM or the new file does not fit on disk.

    :param target: Host name or IP address
    :param size: New swap size (e.g. 4G)
    :param path: Swap file path
    """
    host = _target(target)
    resize_swap(host["ip"], size, path=path, ssh_user=host["ssh_user"])


@fail2ban_app.command(name="setup")
def fail2ban_setup(
    target: str,
    *,
    nginx: bool = False,
    ignoreip: list[str] | None = None,
    destemail: str = "root@localhost",
):
    """Install Fail2ban with SSH protection.

    :param target: Host name or IP address
    :param nginx: Also enable the nginx-http-auth and nginx-limit-req jails
    :param ignoreip: Addresses never banned (e.g. your own IP)
    :param destemail: Notification email address
    """
    host = _target(target)
    print("=================================")
    print(" Fail2ban Security Setup Tool")
    print("=================================")
    setup_fail2ban(
        host["ip"],
        nginx=nginx,
        ignoreip=ignoreip,
        destemail=destemail,
        ssh_user=host["ssh_user"],
    )


@fail2ban_app.command(name="status")
def fail2ban_status(target: str, *, jail: str | None = None):
    """Show active jails, or the banned addresses of one jail.

    :param target: Host name or IP address
    :param jail: Jail to list banned addresses for
    """
    host = _target(target)
    if jail is None:
        check_status(host["ip"], ssh_user=host["ssh_user"])
        return
    addresses = banned_ips(host["ip"], jail, ssh_user=host["ssh_user"])
    if not addresses:
        print(f"No banned IPs in the '{jail}' jail")
        return
    print(f"Banned IPs in '{jail}':")
    for address in addresses:
        print(f"  {address}")


@fail2ban_app.command(name="unban")
def fail2ban_unban(target: str, jail: str, address: str):
    """Remove a ban.

    :param target: Host name or IP address
    :param jail: Jail name (e.g. sshd)
    :param address: Banned IP address
    """
    host = _target(target)
    unban_ip(host["ip"], jail, address, ssh_user=host["ssh_user"])


@ssl_app.command(name="validate-domain")
def ssl_validate_domain(domain: str, *, port: int = 443):
    """Check the certificate a domain serves.

    :param domain: Domain name (e.g. example.com)
    :param port: TLS port
    """
    validate_domain(domain, port)


@ssl_app.command(name="validate-file")
def ssl_validate_file(cert: Path):
    """Check a certificate file.

    :param cert: Certificate file (.crt)
    """
    validate_cert_file(cert)


@ssl_app.command(name="validate-bundle")
def ssl_validate_bundle(cert: Path, key: Path, ca: Path):
    """Check certificate, private key and CA bundle belong together.

    :param cert: Certificate file (.crt)
    :param key: Private key file (.key)
    :param ca: CA bundle file (.crt)
    """
    validate_bundle(cert, key, ca)


@ssl_app.command(name="to-pfx")
def ssl_to_pfx(bundle: Path, *, output_dir: Path = PFX_OUTPUT_DIR):
    """Convert an SSL bundle (ZIP or folder) to PFX.

    :param bundle: ZIP file or directory with .crt, .key and optional CA bundle
    :param output_dir: Output directory for the .pfx and password file
    """
    bundle_to_pfx(bundle, output_dir)


@ssl_app.command(name="from-pfx")
def ssl_from_pfx(
    pfx: Path, *, password: str | None = None, output_dir: Path = SSL_OUTPUT_DIR
):
    """Convert a PFX to a zipped SSL bundle (key, certificate, CA bundle, CSR).

    :param pfx: PFX file
    :param password: PFX password (prompted when omitted)
    :param output_dir: Output directory for the ZIP file
    """
    if password is None:
        password = Prompt.ask("Enter PFX password", password=True)
    pfx_to_bundle(pfx, password, output_dir)


def _existing_path(question: str) -> Path:
    path = Path(Prompt.ask(question))
    if not path.exists():
        error(f"Path not found: {path}")
    return path


@ssl_app.command(name="menu")
def ssl_menu():
    """Interactive SSL management menu."""
    print("=================================")
    print("     SSL Management Tool")
    print("=================================")
    print()
    print("Available operations:")
    print("1. Validate SSL Certificate")
    print("2. Convert SSL Bundle to PFX")
    print("3. Convert PFX to SSL Bundle")
    print()
    operation = Prompt.ask("Select operation", choices=["1", "2", "3"])

    if operation == "1":
        print()
        print("=== SSL Validation Options ===")
        print("1. Validate by domain (online check)")
        print("2. Validate by certificate file")
        print("3. Validate SSL bundle (cert + key + CA)")
        method = Prompt.ask("Select validation method", choices=["1", "2", "3"])
        if method == "1":
            validate_domain(Prompt.ask("Enter domain name (e.g., example.com)"))
        elif method == "2":
            validate_cert_file(_existing_path("Enter path to certificate file (.crt)"))
        else:
            validate_bundle(
                _existing_path("Enter path to certificate file (.crt)"),
                _existing_path("Enter path to private key file (.key)"),
                _existing_path("Enter path to CA bundle file (.crt)"),
            )
        summary = "SSL validation completed successfully."
    elif operation == "2":
        bundle_to_pfx(_existing_path("Enter path to SSL bundle (ZIP file or folder)"))
        summary = f"SSL bundle converted to PFX format.\nCheck the '{PFX_OUTPUT_DIR}' directory for output files."
    else:
        pfx = _existing_path("Enter path to PFX file")
        pfx_to_bundle(pfx, Prompt.ask("Enter PFX password", password=True))
        summary = f"PFX file converted to SSL bundle format.\nCheck the '{SSL_OUTPUT_DIR}' directory for output files."

    print()
    print("=================================")
    print("    SSL Management Complete!")
    print("=================================")
    print(summary)
    print("=================================")


def _collect_paths(ip: str, label: str, hint: str, ssh_user: str) -> list[str]:
    print()
    print(f"=== {label} Path Configuration ===")
    print(f"Enter {label.lower()} file paths (one per line, empty line to finish):")
    print(f"Common paths: {hint}")
    paths = []
    while True:
        path = Prompt.ask(f"{label} path", default="", show_default=False)
        if not path:
            break
        paths.append(path)
    kept = readable_paths(ip, paths, ssh_user=ssh_user)
    log(f"Configured {len(kept)} {label.lower()} paths")
    return kept


@app.command(name="diagnose")
def diagnose(
    target: str,
    *,
    app_type: AppType | None = None,
    log_path: list[str] | None = None,
    config: list[str] | None = None,
    time_window: str | None = None,
    start: str | None = None,
    end: str | None = None,
    output: Path = Path("."),
):
    """Collect a troubleshooting bundle from the host into troubleshoot_<timestamp>/.

    :param target: Host name or IP address
    :param app_type: wordpress, magento, laravel, php or custom
    :param log_path: Remote log file to analyse (repeatable)
    :param config: Remote config file as PATH or PATH=PREFIX, prefix "all" by default (repeatable)
    :param time_window: 1h, 6h, 24h or custom
    :param start: Custom window start (YYYY-MM-DD HH:MM:SS)
    :param end: Custom window end (YYYY-MM-DD HH:MM:SS or now)
    :param output: Local directory receiving the bundle
    """
    host = _target(target)
    ip, ssh_user = host["ip"], host["ssh_user"]

    if ssh_user != "root" and not ssh_ok(ip, "sudo -n true", user=ssh_user):
        warn("Root or passwordless sudo is needed for complete access to logs and configs")
        if not Confirm.ask("Continue anyway?", default=False):
            return

    print("=================================")
    print(" Web Application Troubleshooter")
    print("=================================")
    app_type = _ask(app_type, "Select application type", choices=list(APP_TYPES))

    if log_path is None:
        log_path = _collect_paths(
            ip,
            "Log",
            "/var/log/nginx/error.log, /var/log/php8.3-fpm.log, /var/www/html/wp-content/debug.log",
            ssh_user,
        )
    if config is None:
        configs = {}
        for path in _collect_paths(
            ip,
            "Config",
            "/etc/php/8.3/fpm/pool.d/www.conf, /etc/php/8.3/fpm/php.ini, /etc/nginx/sites-available/default",
            ssh_user,
        ):
            configs[path] = Prompt.ask(
                f"Config prefix to search in {path} (e.g. 'pm', 'memory_limit', or 'all')",
                default="all",
            )
    else:
        configs = dict(
            item.rsplit("=", 1) if "=" in item else (item, "all") for item in config
        )

    time_window = _ask(
        time_window, "Select time range", choices=[*TIME_RANGES, "custom"], default="1h"
    )
    if time_window == "custom":
        start = _ask(start, "Start time (YYYY-MM-DD HH:MM:SS)")
        end = _ask(end, "End time (YYYY-MM-DD HH:MM:SS or 'now')", default="now")
    window_start, window_end = time_range(time_window, start, end)

    out_dir = run_diagnostics(
        ip,
        app_type,
        log_paths=log_path,
        configs=configs,
        start=window_start,
        end=window_end,
        base=output,
        ssh_user=ssh_user,
    )
    print()
    print("===========================================")
    print("Troubleshooting completed!")
    print(f"All detailed logs saved to: {out_dir}/")
    print("===========================================")


def main():
    setup_logging()
    app()


if __name__ == "__main__":
    main()

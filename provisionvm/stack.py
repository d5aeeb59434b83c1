"""Package components: PHP-FPM, Composer, Node.js, PM2, Redis and Supervisor."""

import re
from textwrap import dedent

from .server import (
    APT,
    apt_install,
    command_exists,
    enable_service,
    is_installed,
    ssh,
    ssh_ok,
    ssh_write_file,
)
from .utils import DEFAULT_SSH_USER, error, log, skip, success

NODE_VERSIONS = ("18", "20", "22")

LARAVEL_PHP_EXTENSIONS = (
    "mysql",
    "pgsql",
    "sqlite3",
    "redis",
    "memcached",
    "gd",
    "xml",
    "mbstring",
    "curl",
    "zip",
    "bcmath",
    "intl",
    "readline",
    "msgpack",
    "igbinary",
)


def validate_php_version(version: str, minimum_minor: int = 0) -> bool:
    """True for 8.<minimum_minor> up to 8.4."""
    return bool(re.fullmatch(rf"8\.[{minimum_minor}-4]", version.strip()))


def validate_node_version(version: str) -> bool:
    return version.strip() in NODE_VERSIONS


def php_package(version: str) -> str:
    return f"php{version}"


def install_php(
    ip: str,
    version: str,
    extensions: tuple[str, ...] = (),
    *,
    idempotent: bool = True,
    ssh_user: str = DEFAULT_SSH_USER,
):
    """Install PHP CLI and FPM from ppa:ondrej/php and start the FPM service.

    :param version: PHP version (e.g. "8.3")
    :param extensions: Extension suffixes installed as php<version>-<ext>
    :param idempotent: Skip when php<version> is already installed
    """
    pkg = php_package(version)
    if idempotent and is_installed(ip, pkg, ssh_user=ssh_user):
        skip(f"PHP {version}")
        return

    log("Adding PHP repository...")
    if not apt_install(ip, "software-properties-common", ssh_user=ssh_user):
        error("Failed to install software-properties-common")
    if not ssh_ok(ip, "sudo add-apt-repository ppa:ondrej/php -y", user=ssh_user):
        error("Failed to add PHP repository (ppa:ondrej/php)")
    if not ssh_ok(ip, f"{APT} update -y", user=ssh_user):
        error("Failed to update package list after adding PHP repository")

    packages = [pkg, f"{pkg}-cli", f"{pkg}-fpm"] + [f"{pkg}-{ext}" for ext in extensions]
    log(f"Installing PHP {pkg} ({len(packages)} packages)...")
    if not apt_install(ip, *packages, ssh_user=ssh_user):
        error(f"Failed to install PHP {version} packages")

    enable_service(ip, f"{pkg}-fpm", "PHP-FPM", ssh_user=ssh_user)
    success(f"PHP {version} installed")


def install_composer(ip: str, ssh_user: str = DEFAULT_SSH_USER):
    if command_exists(ip, "composer", ssh_user=ssh_user):
        skip("Composer")
        return

    log("Installing Composer...")
    if not apt_install(ip, "composer", ssh_user=ssh_user):
        error("Failed to install Composer")
    version = ssh(ip, "composer --version 2>/dev/null | head -1 || true", user=ssh_user).strip()
    success(f"Composer installed: {version}")


def install_nodejs_apt(ip: str, ssh_user: str = DEFAULT_SSH_USER):
    """Install the distribution's nodejs and npm packages."""
    if command_exists(ip, "node", ssh_user=ssh_user) and command_exists(
        ip, "npm", ssh_user=ssh_user
    ):
        skip("Node.js and npm")
        return

    log("Installing Node.js and npm...")
    if not apt_install(ip, "nodejs", "npm", ssh_user=ssh_user):
        error("Failed to install Node.js and npm")
    _log_node_versions(ip, ssh_user)


def installed_node_major(ip: str, ssh_user: str = DEFAULT_SSH_USER) -> str | None:
    """Major version of the installed node binary, e.g. "20" for v20.11.1."""
    if not command_exists(ip, "node", ssh_user=ssh_user):
        return None
    out = ssh(ip, "node --version", user=ssh_user).strip()
    match = re.match(r"v?(\d+)", out)
    return match.group(1) if match else None


def install_nodejs(ip: str, version: str = "20", ssh_user: str = DEFAULT_SSH_USER):
    """Install Node.js from the NodeSource repository.

    :param version: Node.js major version (18, 20 or 22)
    """
    if installed_node_major(ip, ssh_user=ssh_user) == version:
        skip(f"Node.js v{version}")
        return

    log(f"Installing Node.js v{version}...")
    if not ssh_ok(
        ip,
        f"curl -fsSL https://deb.nodesource.com/setup_{version}.x | sudo -E bash -",
        user=ssh_user,
    ):
        error("Failed to add Node.js repository")
    if not apt_install(ip, "nodejs", ssh_user=ssh_user):
        error("Failed to install Node.js")
    _log_node_versions(ip, ssh_user)


def _log_node_versions(ip: str, ssh_user: str):
    node = ssh(ip, "node --version 2>/dev/null || true", user=ssh_user).strip()
    npm = ssh(ip, "npm --version 2>/dev/null || true", user=ssh_user).strip()
    success(f"Node.js installed: {node}")
    success(f"npm installed: {npm}")


def install_pm2(ip: str, startup_user: str = "root", ssh_user: str = DEFAULT_SSH_USER):
    """Install PM2 globally and register its systemd startup hook."""
    if command_exists(ip, "pm2", ssh_user=ssh_user):
        skip("PM2")
        return

    log("Installing PM2...")
    if not ssh_ok(ip, "sudo npm install -g pm2", user=ssh_user):
        error("Failed to install PM2")
    home = "/root" if startup_user == "root" else f"/home/{startup_user}"
    # startup hook is best effort
    ssh_ok(ip, f"sudo pm2 startup systemd -u {startup_user} --hp {home}", user=ssh_user)
    success("PM2 installed and configured")


def install_redis(ip: str, ssh_user: str = DEFAULT_SSH_USER):
    """Install Redis capped at 256mb with LRU eviction."""
    if is_installed(ip, "redis-server", ssh_user=ssh_user):
        skip("Redis")
        return

    log("Installing Redis...")
    if not apt_install(ip, "redis-server", ssh_user=ssh_user):
        error("Failed to install Redis")
    enable_service(ip, "redis-server", "Redis", ssh_user=ssh_user)

    conf = "/etc/redis/redis.conf"
    ssh_ok(ip, f"sudo sed -i 's/^# maxmemory <bytes>/maxmemory 256mb/' {conf}", user=ssh_user)
    ssh_ok(
        ip,
        f"sudo sed -i 's/^# maxmemory-policy noeviction/maxmemory-policy allkeys-lru/' {conf}",
        user=ssh_user,
    )
    if not ssh_ok(ip, "sudo systemctl restart redis-server", user=ssh_user):
        error("Failed to restart Redis")
    success("Redis installed and configured")


def generate_queue_worker_config(app_name: str, web_root: str) -> str:
    """Supervisor program running two Laravel queue workers as www-data."""
    return dedent(f"""
        [program:{app_name}-worker]
        process_name=%(program_name)s_%(process_num)02d
        command=php {web_root}/artisan queue:work --sleep=3 --tries=3 --max-time=3600
        directory={web_root}
        autostart=true
        autorestart=true
        stopasgroup=true
        killasgroup=true
        user=www-data
        numprocs=2
        redirect_stderr=true
        stdout_logfile={web_root}/storage/logs/worker.log
        stopwaitsecs=3600
    """).lstrip()


def install_supervisor(
    ip: str, app_name: str, web_root: str, ssh_user: str = DEFAULT_SSH_USER
):
    """Install Supervisor and write the queue worker program for the app."""
    if is_installed(ip, "supervisor", ssh_user=ssh_user):
        skip("Supervisor")
        return

    log("Installing Supervisor...")
    if not apt_install(ip, "supervisor", ssh_user=ssh_user):
        error("Failed to install Supervisor")
    enable_service(ip, "supervisor", "Supervisor", ssh_user=ssh_user)

    ssh_write_file(
        ip,
        f"/etc/supervisor/conf.d/{app_name}-worker.conf",
        generate_queue_worker_config(app_name, web_root),
        user=ssh_user,
    )
    success("Supervisor installed with Laravel queue worker config")

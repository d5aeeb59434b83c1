"""Server operations: SSH, package/service probes, host records and network checks."""

import base64
import json
import re
import shlex
import time
from pathlib import Path
from typing import Literal

import dns.resolver
from fabric import Connection
from rich import print

from .types import HostData, SiteInfo, SiteType
from .utils import (
    DEFAULT_SSH_USER,
    LogStream,
    error,
    get_ssh_user,
    log,
    primary_domain,
    success,
    warn,
)

APT = "sudo DEBIAN_FRONTEND=noninteractive apt-get"
SSH_RETRIES = 3
SSH_RETRY_DELAY = 5


def check_host_reachable(ip: str, ssh_user: str = DEFAULT_SSH_USER, timeout: int = 10) -> bool:
    """Quick check if host is reachable via SSH.

    :param ip: Host IP address
    :param ssh_user: SSH user for connection
    :param timeout: Connection timeout in seconds
    :return: True if reachable, False otherwise
    """
    try:
        with Connection(
            ip, user=ssh_user, connect_kwargs={"look_for_keys": True, "timeout": timeout}
        ) as c:
            c.run("echo ping", hide=True, in_stream=False)
        return True
    except Exception:
        return False


def _exec(ip: str, cmd: str, user: str, show_output: bool) -> tuple[bool, str, str]:
    """Single SSH attempt - open connection, run cmd, return (ok, stdout, stderr)."""
    with Connection(ip, user=user, connect_kwargs={"look_for_keys": True}) as c:
        if show_output:
            stream = LogStream()
            result = c.run(cmd, hide=True, warn=True, in_stream=False,
                           out_stream=stream, err_stream=stream)
            stream.flush()
        else:
            result = c.run(cmd, hide=True, warn=True, in_stream=False)
        return result.ok, result.stdout, result.stderr


def _retry_ssh(ip: str, cmd: str, user: str, show_output: bool) -> tuple[bool, str, str]:
    """Run SSH command with up to 3 retries on transient connection resets."""
    from paramiko.ssh_exception import SSHException as ParamikoSSH

    for attempt in range(SSH_RETRIES):
        try:
            return _exec(ip, cmd, user, show_output)
        except ParamikoSSH as e:
            if "Error reading SSH protocol banner" in str(e) and attempt < SSH_RETRIES - 1:
                time.sleep(SSH_RETRY_DELAY)
                continue
            error(f"SSH connection failed: {e}")
    error("SSH connection failed after retries")


def ssh(ip: str, cmd: str, user: str = DEFAULT_SSH_USER, show_output: bool = False) -> str:
    ok, stdout, stderr = _retry_ssh(ip, cmd, user, show_output)
    if not ok:
        error(f"SSH command failed: {stderr.strip() or cmd}")
    return stdout


def _wrap_script(script: str) -> str:
    escaped = script.replace("'", "'\\''")
    return f"bash -c '{escaped}'"


def ssh_script(ip: str, script: str, user: str = DEFAULT_SSH_USER, show_output: bool = False) -> str:
    ok, stdout, stderr = _retry_ssh(ip, _wrap_script(script), user, show_output)
    if not ok:
        error(f"SSH script failed: {stderr.strip()}")
    return stdout


def ssh_ok(ip: str, cmd: str, user: str = DEFAULT_SSH_USER) -> bool:
    """Run a command and report success instead of exiting on failure."""
    ok, _, _ = _retry_ssh(ip, _wrap_script(cmd), user, False)
    return ok


def ssh_write_file(ip: str, path: str, content: str, user: str = DEFAULT_SSH_USER, mode: str | None = None):
    encoded = base64.b64encode(content.encode()).decode()
    if mode:
        # final mode is set before any content lands
        ssh(ip, f"sudo install -m {mode} /dev/null {path}", user=user)
    ssh(ip, f"echo '{encoded}' | base64 -d | sudo tee {path} > /dev/null", user=user)


def ssh_read_file(
    ip: str, path: str, user: str = DEFAULT_SSH_USER, tail: int | None = None
) -> str | None:
    """Contents of a remote file, or None if it cannot be read.

    :param tail: Only transfer the last N lines
    """
    reader = f"tail -n {tail}" if tail else "cat"
    ok, stdout, _ = _retry_ssh(ip, f"sudo {reader} {shlex.quote(path)}", user, False)
    return stdout if ok else None


def check_sudo(ip: str, ssh_user: str = DEFAULT_SSH_USER):
    """Require root or passwordless sudo on the host."""
    if ssh_user == "root":
        return
    if not ssh_ok(ip, "sudo -n true", user=ssh_user):
        error(f"User '{ssh_user}' needs root or passwordless sudo on '{ip}'.")


def is_installed(ip: str, package: str, ssh_user: str = DEFAULT_SSH_USER) -> bool:
    """True if dpkg reports the package as installed."""
    return ssh_ok(ip, f"dpkg -l | grep -q '^ii  {package} '", user=ssh_user)


def command_exists(ip: str, name: str, ssh_user: str = DEFAULT_SSH_USER) -> bool:
    return ssh_ok(ip, f"command -v {name} >/dev/null 2>&1", user=ssh_user)


def service_active(ip: str, name: str, ssh_user: str = DEFAULT_SSH_USER) -> bool:
    return ssh_ok(ip, f"systemctl is-active --quiet {name}", user=ssh_user)


def apt_install(ip: str, *packages: str, ssh_user: str = DEFAULT_SSH_USER) -> bool:
    return ssh_ok(ip, f"{APT} install -y {' '.join(packages)}", user=ssh_user)


def enable_service(
    ip: str, name: str, label: str | None = None, ssh_user: str = DEFAULT_SSH_USER
):
    """Enable and start a systemd unit; either failure is fatal."""
    label = label or name
    if not ssh_ok(ip, f"sudo systemctl enable {name}", user=ssh_user):
        error(f"Failed to enable {label}")
    if not ssh_ok(ip, f"sudo systemctl start {name}", user=ssh_user):
        error(f"Failed to start {label}")


def count_upgradable(ip: str, ssh_user: str = DEFAULT_SSH_USER) -> int:
    out = ssh(
        ip,
        "apt list --upgradable 2>/dev/null | grep -c upgradable || true",
        user=ssh_user,
    ).strip()
    return int(out) if out.isdigit() else 0


def update_system(
    ip: str,
    ssh_user: str = DEFAULT_SSH_USER,
    upgrade: Literal["auto", "always"] = "auto",
):
    """Refresh package lists and upgrade.

    :param upgrade: "auto" upgrades only when packages are pending, "always" upgrades unconditionally
    """
    log("Checking for system package updates...")
    if not ssh_ok(ip, f"{APT} update -y", user=ssh_user):
        error("Failed to update package list")

    if upgrade == "auto":
        count = count_upgradable(ip, ssh_user=ssh_user)
        if count == 0:
            success("No package updates available. System is up to date.")
            return
        log(f"Found {count} upgradable packages. Upgrading...")

    if not ssh_ok(ip, f"{APT} upgrade -y", user=ssh_user):
        error("Failed to upgrade system packages")
    success("System packages updated")


def get_server_ips(ip: str, ssh_user: str = DEFAULT_SSH_USER) -> list[str]:
    return ssh(ip, "hostname -I", user=ssh_user).split()


def ensure_web_firewall(ip: str, ssh_user: str = DEFAULT_SSH_USER):
    """Allow HTTP (80) and HTTPS (443) when UFW is active."""
    result = ssh(ip, "sudo ufw status 2>/dev/null || true", user=ssh_user)
    if "Status: active" not in result:
        return

    cmds = []
    if "80/tcp" not in result:
        cmds.append("sudo ufw allow 80/tcp")
    if "443/tcp" not in result:
        cmds.append("sudo ufw allow 443/tcp")
    if not cmds:
        log("Firewall OK")
        return
    log("Opening web ports in firewall...")
    cmds.append("sudo ufw reload")
    ssh_script(ip, " && ".join(cmds), user=ssh_user)
    log("Firewall updated")


def load_host(name: str) -> HostData:
    """Load host data from JSON file.

    :param name: Host name (JSON file prefix)
    :return: Host data dictionary with sites list
    """
    path = Path(f"{name}.host.json")
    if not path.exists():
        error(f"Host file not found: '{path}'")
    data = json.loads(path.read_text())
    data.setdefault("sites", [])
    return data


def save_host(name: str, data: HostData):
    """Save host data to JSON file.

    :param name: Host name (JSON file prefix)
    :param data: Host data dictionary to save
    """
    Path(f"{name}.host.json").write_text(json.dumps(data, indent=2))


def get_host_sites(host: HostData) -> list[SiteInfo]:
    return host.get("sites", [])


def add_site_to_host(host: HostData, site_name: str, site_type: SiteType, port: int | None = None, **extra):
    """Add or update site in host with conflict detection.

    :param host: Host data dictionary to modify
    :param site_name: Site (application) name
    :param site_type: Site type (static, laravel or nodejs)
    :param port: Upstream port for proxied sites (optional)
    :param extra: Additional fields to store on the site (domain, web_root, etc.)
    """
    host.setdefault("sites", [])

    if port is not None:
        conflicting = [
            s for s in host["sites"] if s["name"] != site_name and s.get("port") == port
        ]
        if conflicting:
            names = ", ".join(s["name"] for s in conflicting)
            warn(f"Port {port} already in use by: {names}")

    existing = next((s for s in host["sites"] if s["name"] == site_name), None)
    if existing:
        old_type = existing.get("type", "unknown")
        if old_type != site_type:
            warn(f"Site '{site_name}' type changing from '{old_type}' to '{site_type}'")
        existing["type"] = site_type
        if port is not None:
            existing["port"] = port
        existing.update({k: v for k, v in extra.items() if v is not None})
        log(f"Updated site '{site_name}' ('{old_type}' -> '{site_type}')")
    else:
        site = {"name": site_name, "type": site_type}
        if port is not None:
            site["port"] = port
        site.update({k: v for k, v in extra.items() if v is not None})
        host["sites"].append(site)
        log(f"Added site '{site_name}' ('{site_type}')")


def is_valid_ip(ip: str) -> bool:
    parts = ip.split(".")
    return len(parts) == 4 and all(
        part.isdigit() and 0 <= int(part) <= 255 for part in parts
    )


def resolve_host(target: str) -> HostData:
    """:return: Host dict with at least ``ip`` and ``ssh_user`` keys"""
    if is_valid_ip(target) or target == "localhost":
        return {"ip": target, "ssh_user": get_ssh_user(), "sites": []}
    data = load_host(target)
    if "ssh_user" not in data:
        data["ssh_user"] = get_ssh_user()
    return data


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address.

    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP or None
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A")
        return str(answer[0]) if answer else None
    except Exception:
        return None


def check_dns_resolution(server_names: str) -> bool:
    """Resolve the primary domain; SSL is only attempted when this succeeds."""
    domain = primary_domain(server_names)
    if resolve_dns_a(domain):
        log(f"DNS resolution confirmed for {domain}")
        return True
    log(f"DNS not resolved for {domain} - SSL will be skipped")
    return False


def remote_http_status(
    ip: str, url: str, host: str | None = None, ssh_user: str = DEFAULT_SSH_USER
) -> str:
    """HTTP status code as seen from the host itself ("000" when unreachable)."""
    header = f"-H {shlex.quote(f'Host: {host}')} " if host else ""
    out = ssh(
        ip,
        f"curl -s -o /dev/null -w '%{{http_code}}' {header}{shlex.quote(url)} 2>/dev/null || echo 000",
        user=ssh_user,
    ).strip()
    match = re.search(r"\d{3}", out)
    return match.group(0) if match else "000"


def verify_host(target: str):
    """Verify host health: SSH, sudo, nginx, firewall, DNS and HTTP for recorded sites.

    :param target: Host name or IP address
    """
    host = resolve_host(target)
    ip = host["ip"]
    ssh_user = host["ssh_user"]

    print(f"Verifying '{target}' ('{ip}')...")
    print("-" * 40)
    issues = []

    if not check_host_reachable(ip, ssh_user):
        print(f"[FAIL] SSH: cannot connect as '{ssh_user}'")
        return
    uptime = ssh(ip, "uptime", user=ssh_user).strip()
    print(f"[OK] SSH: '{uptime}'")

    if ssh_user == "root" or ssh_ok(ip, "sudo -n true", user=ssh_user):
        print("[OK] sudo: available")
    else:
        print("[FAIL] sudo: password required")
        issues.append("No passwordless sudo")

    for service in ("nginx", "fail2ban"):
        if service_active(ip, service, ssh_user=ssh_user):
            print(f"[OK] {service}: running")
        elif is_installed(ip, service, ssh_user=ssh_user):
            print(f"[FAIL] {service}: installed but not running")
            issues.append(f"{service} not running")
        else:
            print(f"[--] {service}: not installed")

    swap = ssh(ip, "swapon --show --noheadings 2>/dev/null || true", user=ssh_user).strip()
    print(f"[OK] Swap: {swap.split()[2]}" if swap else "[WARN] Swap: none configured")

    for site in get_host_sites(host):
        domain = site.get("domain")
        if not domain:
            continue
        name = primary_domain(domain)
        dns_ip = resolve_dns_a(name)
        if dns_ip == ip:
            print(f"[OK] DNS: '{name}' -> '{ip}'")
        elif dns_ip:
            print(f"[WARN] DNS: '{name}' -> '{dns_ip}' (expected '{ip}')")
        else:
            print(f"[FAIL] DNS: '{name}' -> no A record found")
            issues.append(f"DNS missing for {name}")

        status = remote_http_status(ip, "http://localhost", host=name, ssh_user=ssh_user)
        if status in ("200", "301", "302"):
            print(f"[OK] HTTP: '{name}' responding ({status})")
        else:
            print(f"[FAIL] HTTP: '{name}' returned {status}")
            issues.append(f"HTTP failed for {name}")

    print("-" * 40)
    if issues:
        print(f"Issues found ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
    else:
        print("All checks passed!")

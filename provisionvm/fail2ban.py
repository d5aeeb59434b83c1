"""Fail2ban installation, jail configuration and status."""

from textwrap import dedent

from rich import print
from rich.markup import escape

from .server import (
    apt_install,
    check_sudo,
    enable_service,
    get_server_ips,
    is_installed,
    service_active,
    ssh,
    ssh_ok,
    ssh_write_file,
    update_system,
)
from .utils import DEFAULT_SSH_USER, error, log, skip, success

JAIL_LOCAL = "/etc/fail2ban/jail.local"


def install_fail2ban(ip: str, ssh_user: str = DEFAULT_SSH_USER):
    if is_installed(ip, "fail2ban", ssh_user=ssh_user):
        skip("Fail2ban")
        return

    log("Installing Fail2ban...")
    if not apt_install(ip, "fail2ban", ssh_user=ssh_user):
        error("Failed to install Fail2ban")
    enable_service(ip, "fail2ban", "Fail2ban", ssh_user=ssh_user)
    success("Fail2ban installed and started")


def generate_jail_config(
    *,
    destemail: str = "root@localhost",
    sender: str = "fail2ban@localhost",
    nginx: bool = False,
    ignoreip: list[str] | None = None,
) -> str:
    """Generate jail.local with SSH protection.

    :param destemail: Notification recipient
    :param sender: Notification sender
    :param nginx: Also enable the nginx-http-auth and nginx-limit-req jails
    :param ignoreip: Addresses never banned (localhost is always included)
    """
    config = dedent(f"""
        [DEFAULT]
        # Ban hosts for 1 hour (3600 seconds)
        bantime = 3600

        # A host is banned if it has generated "maxretry" during the last "findtime" seconds
        findtime = 600

        # Number of failures before a host get banned
        maxretry = 5

        # Destination email for notifications
        destemail = {destemail}

        # Sender email
        sender = {sender}

        # Email action
        action = %(action_mw)s
    """).lstrip()

    if ignoreip:
        config += f"\nignoreip = {' '.join(['127.0.0.1/8', '::1', *ignoreip])}\n"

    config += dedent("""
        [sshd]
        enabled = true
        port = ssh
        filter = sshd
        logpath = /var/log/auth.log
        maxretry = 3
        bantime = 3600
        findtime = 600
    """)

    if nginx:
        config += dedent("""
            [nginx-http-auth]
            enabled = true
            filter = nginx-http-auth
            logpath = /var/log/nginx/error.log
            maxretry = 3

            [nginx-limit-req]
            enabled = true
            filter = nginx-limit-req
            logpath = /var/log/nginx/error.log
            maxretry = 10
        """)
    return config


def write_jail_config(ip: str, config: str, ssh_user: str = DEFAULT_SSH_USER):
    log("Creating basic Fail2ban configuration...")
    ssh_write_file(ip, JAIL_LOCAL, config, user=ssh_user)
    if not ssh_ok(ip, "sudo systemctl restart fail2ban", user=ssh_user):
        error("Failed to restart Fail2ban")
    success("Basic configuration created and applied")


def parse_jail_list(output: str) -> list[str]:
    """Jail names from the "Jail list:" line of ``fail2ban-client status``."""
    for line in output.splitlines():
        if "Jail list:" in line:
            names = line.split("Jail list:", 1)[1]
            return [name.strip() for name in names.split(",") if name.strip()]
    return []


def check_status(ip: str, ssh_user: str = DEFAULT_SSH_USER) -> list[str]:
    """:return: Active jail names; exits if the service is not running"""
    log("Checking Fail2ban status...")
    if not service_active(ip, "fail2ban", ssh_user=ssh_user):
        error("Fail2ban service is not running")
    success("Fail2ban service is running")

    jails = parse_jail_list(
        ssh(ip, "sudo fail2ban-client status 2>/dev/null || true", user=ssh_user)
    )
    if jails:
        success(f"Active jails: {', '.join(jails)}")
    else:
        log("No active jails found")
    return jails


def banned_ips(ip: str, jail: str, ssh_user: str = DEFAULT_SSH_USER) -> list[str]:
    out = ssh(ip, f"sudo fail2ban-client status {jail} 2>/dev/null || true", user=ssh_user)
    for line in out.splitlines():
        if "Banned IP list:" in line:
            return line.split("Banned IP list:", 1)[1].split()
    return []


def unban_ip(ip: str, jail: str, address: str, ssh_user: str = DEFAULT_SSH_USER):
    if not ssh_ok(ip, f"sudo fail2ban-client set {jail} unbanip {address}", user=ssh_user):
        error(f"Failed to unban {address} from {jail}")
    success(f"Unbanned {address} from {jail}")


def setup_guide(server_ips: list[str]) -> str:
    """Post-install reference: config files, commands and common jails."""
    guide = dedent("""
        =========================================
         Fail2ban Setup Complete!
        =========================================

        ✓ Fail2ban installed and configured
        ✓ SSH protection enabled (3 failed attempts = 1 hour ban)
        ✓ Service is running and enabled

        === CONFIGURATION FILES ===
        Main config: /etc/fail2ban/jail.conf (DO NOT EDIT)
        Local config: /etc/fail2ban/jail.local (YOUR CUSTOMIZATIONS)
        Filters: /etc/fail2ban/filter.d/
        Actions: /etc/fail2ban/action.d/

        === USEFUL COMMANDS ===
        Check status:        fail2ban-client status
        Check SSH jail:      fail2ban-client status sshd
        Unban IP:            fail2ban-client set sshd unbanip <IP>
        Ban IP manually:     fail2ban-client set sshd banip <IP>
        Reload config:       fail2ban-client reload
        View logs:           tail -f /var/log/fail2ban.log

        === COMMON CONFIGURATIONS ===
        Nginx jails:   provisionvm fail2ban setup TARGET --nginx
        Apache jail (add to /etc/fail2ban/jail.local):
          [apache-auth]
          enabled = true
          filter = apache-auth
          logpath = /var/log/apache2/error.log
          maxretry = 3
        Email notifications: --destemail admin@yourdomain.com
          (action = %(action_mwl)s also attaches log lines)

        === IMPORTANT NOTES ===
        • Always test configurations before applying
        • Keep a backup SSH session open when testing
        • Whitelist your own IP if needed (--ignoreip YOUR_IP)
        • Monitor /var/log/fail2ban.log for issues
        • Restart fail2ban after config changes: systemctl restart fail2ban

        Current server IP addresses:
    """).lstrip()
    guide += "".join(f"  {addr}\n" for addr in server_ips)
    guide += "\n========================================="
    return guide


def setup_fail2ban(
    ip: str,
    *,
    nginx: bool = False,
    ignoreip: list[str] | None = None,
    destemail: str = "root@localhost",
    ssh_user: str = DEFAULT_SSH_USER,
) -> list[str]:
    """Install fail2ban, apply the jail config and print the setup guide.

    :return: Active jail names
    """
    check_sudo(ip, ssh_user)
    update_system(ip, ssh_user=ssh_user)
    install_fail2ban(ip, ssh_user=ssh_user)
    write_jail_config(
        ip,
        generate_jail_config(destemail=destemail, nginx=nginx, ignoreip=ignoreip),
        ssh_user=ssh_user,
    )
    jails = check_status(ip, ssh_user=ssh_user)
    print(escape(setup_guide(get_server_ips(ip, ssh_user=ssh_user))))
    return jails

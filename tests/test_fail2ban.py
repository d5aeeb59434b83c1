import pytest

from provisionvm import fail2ban

IP = "203.0.113.10"

STATUS = """\
Status
|- Number of jail:      2
`- Jail list:   nginx-http-auth, sshd
"""

SSHD_STATUS = """\
Status for the jail: sshd
|- Filter
|  |- Currently failed: 1
|  `- Total failed:     12
`- Actions
   |- Currently banned: 2
   |- Total banned:     5
   `- Banned IP list:   198.51.100.7 203.0.113.99
"""


def test_jail_config_defaults():
    config = fail2ban.generate_jail_config()
    assert config.startswith("[DEFAULT]\n")
    assert "bantime = 3600" in config
    assert "destemail = root@localhost" in config
    assert "action = %(action_mw)s" in config
    assert "[sshd]\nenabled = true" in config
    assert "logpath = /var/log/auth.log\nmaxretry = 3" in config
    assert "ignoreip" not in config
    assert "[nginx-http-auth]" not in config


def test_jail_config_nginx_and_ignoreip():
    config = fail2ban.generate_jail_config(nginx=True, ignoreip=["198.51.100.2"], destemail="ops@example.com")
    assert "ignoreip = 127.0.0.1/8 ::1 198.51.100.2" in config
    assert config.index("ignoreip") < config.index("[sshd]")
    assert "[nginx-http-auth]" in config
    assert "[nginx-limit-req]" in config
    assert "destemail = ops@example.com" in config


def test_parse_jail_list():
    assert fail2ban.parse_jail_list(STATUS) == ["nginx-http-auth", "sshd"]
    assert fail2ban.parse_jail_list("Status\n") == []


def test_install_skips_when_present(fake_host):
    fail2ban.install_fail2ban(IP)
    assert not fake_host.ran("install -y fail2ban")


def test_install_failure_is_fatal(fresh_host):
    fresh_host.fail(r"install -y fail2ban")
    with pytest.raises(SystemExit):
        fail2ban.install_fail2ban(IP)


def test_check_status(fake_host):
    fake_host.on(r"^sudo fail2ban-client status 2>/dev/null", stdout=STATUS)
    assert fail2ban.check_status(IP) == ["nginx-http-auth", "sshd"]


def test_check_status_inactive(fake_host):
    fake_host.fail(r"systemctl is-active --quiet fail2ban")
    with pytest.raises(SystemExit):
        fail2ban.check_status(IP)


def test_restart_failure_is_fatal(fake_host):
    fake_host.fail(r"systemctl restart fail2ban")
    with pytest.raises(SystemExit):
        fail2ban.write_jail_config(IP, "[DEFAULT]\n")


def test_banned_ips(fake_host):
    fake_host.on(r"fail2ban-client status sshd", stdout=SSHD_STATUS)
    assert fail2ban.banned_ips(IP, "sshd") == ["198.51.100.7", "203.0.113.99"]


def test_unban(fake_host):
    fail2ban.unban_ip(IP, "sshd", "198.51.100.7")
    assert fake_host.ran(r"^sudo fail2ban-client set sshd unbanip 198.51.100.7$")


def test_setup_guide_lists_ips():
    guide = fail2ban.setup_guide(["10.0.0.5", "2001:db8::5"])
    assert "Current server IP addresses:\n  10.0.0.5\n  2001:db8::5\n" in guide
    assert "fail2ban-client status sshd" in guide


def test_setup_fail2ban(fresh_host, capsys):
    fresh_host.on(r"apt list --upgradable", stdout="0\n")
    fresh_host.on(r"systemctl is-active --quiet fail2ban", ok=True)
    fresh_host.on(r"^sudo fail2ban-client status 2>/dev/null", stdout=STATUS)
    fresh_host.on(r"hostname -I", stdout="10.0.0.5\n")

    jails = fail2ban.setup_fail2ban(IP, nginx=True)

    assert jails == ["nginx-http-auth", "sshd"]
    assert "[nginx-limit-req]" in fresh_host.files["/etc/fail2ban/jail.local"]
    assert fresh_host.ran(r"systemctl enable fail2ban")
    assert "[apache-auth]" in capsys.readouterr().out

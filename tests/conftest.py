"""Fixtures: a scripted fake host for unit tests and a live host for integration tests."""

import base64
import re
import time

import pytest

from provisionvm import server

WRITE_RE = re.compile(r"^echo '([A-Za-z0-9+/=]*)' \| base64 -d \| sudo tee (\S+) > /dev/null$")


def unwrap(cmd: str) -> str:
    """Undo the ``bash -c '...'`` wrapping applied by ssh_ok/ssh_script."""
    if cmd.startswith("bash -c '") and cmd.endswith("'"):
        return cmd[len("bash -c '"):-1].replace("'\\''", "'")
    return cmd


class FakeHost:
    """Stands in for the SSH transport.

    Every command is recorded (unwrapped). Rules are regexes searched in the
    command; the most recently added matching rule decides the result.
    Unmatched commands succeed with empty output. File writes done through
    ssh_write_file are decoded into ``files``.
    """

    def __init__(self):
        self.commands: list[str] = []
        self.users: list[str] = []
        self.files: dict[str, str] = {}
        self.rules: list[tuple[re.Pattern, bool, str]] = []

    def on(self, pattern: str, stdout: str = "", ok: bool = True):
        self.rules.insert(0, (re.compile(pattern), ok, stdout))
        return self

    def fail(self, pattern: str):
        return self.on(pattern, ok=False)

    def ran(self, pattern: str) -> bool:
        return any(re.search(pattern, cmd) for cmd in self.commands)

    def count(self, pattern: str) -> int:
        return sum(1 for cmd in self.commands if re.search(pattern, cmd))

    def __call__(self, ip: str, cmd: str, user: str, show_output: bool):
        cmd = unwrap(cmd)
        self.commands.append(cmd)
        self.users.append(user)

        write = WRITE_RE.match(cmd)
        if write:
            self.files[write.group(2)] = base64.b64decode(write.group(1)).decode()
            return True, "", ""

        for pattern, ok, stdout in self.rules:
            if pattern.search(cmd):
                return ok, stdout, "" if ok else "command failed"
        return True, "", ""


@pytest.fixture
def fake_host(monkeypatch):
    host = FakeHost()
    monkeypatch.setattr(server, "_exec", host)
    monkeypatch.setattr(time, "sleep", lambda seconds: None)
    return host


@pytest.fixture
def fresh_host(fake_host):
    """A host with nothing installed and no services running."""
    fake_host.fail(r"^dpkg -l")
    fake_host.fail(r"^systemctl is-active")
    fake_host.fail(r"^command -v")
    fake_host.fail(r"swapon --show \| grep")
    return fake_host


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Host records and local output directories land in a temp dir."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PROVISIONVM_SSH_USER", raising=False)
    monkeypatch.delenv("PROVISIONVM_EMAIL", raising=False)
    return tmp_path


def pytest_addoption(parser):
    parser.addoption(
        "--host",
        default=None,
        help="Host name or IP for integration tests",
    )
    parser.addoption(
        "--ssh-user",
        default=None,
        help="SSH user for integration tests (default: PROVISIONVM_SSH_USER or root)",
    )


@pytest.fixture(scope="session")
def live_host(request):
    """Resolved live host dict; skips when --host is not given or unreachable."""
    target = request.config.getoption("--host")
    if not target:
        pytest.skip("pass --host to run integration tests")
    host = server.resolve_host(target)
    ssh_user = request.config.getoption("--ssh-user")
    if ssh_user:
        host["ssh_user"] = ssh_user
    if not server.check_host_reachable(host["ip"], host["ssh_user"]):
        pytest.skip(f"host {host['ip']} not reachable via SSH")
    return host

"""Swap file setup and safe resizing."""

import re
from textwrap import dedent

from rich import print

from .server import ssh, ssh_ok, ssh_script
from .utils import DEFAULT_SSH_USER, error, log, skip, success

SWAP_PATH = "/swapfile"


def parse_size_mb(size: str) -> int:
    """Convert a size ("4G", "512M") to MiB; a bare number means GiB."""
    match = re.fullmatch(r"\s*(\d+)\s*([GgMm]?)\s*", size)
    if not match:
        raise ValueError(f"Invalid swap size: {size!r}")
    value, unit = int(match.group(1)), match.group(2).upper()
    return value * 1024 if unit in ("G", "") else value


def setup_swap(
    ip: str,
    size: str = "2G",
    *,
    tune: bool = True,
    ssh_user: str = DEFAULT_SSH_USER,
):
    """Create and enable a swap file if none is active.

    :param size: Swap file size (e.g. "2G")
    :param tune: Also apply vm.swappiness=10 and vm.vfs_cache_pressure=50
    """
    log(f"Setting up {size} swap file...")
    if ssh_ok(ip, f"swapon --show | grep -q '{SWAP_PATH}'", user=ssh_user):
        skip("Swap file")
        return

    count = parse_size_mb(size)
    created = ssh_ok(
        ip,
        f"sudo fallocate -l {count}M {SWAP_PATH} || "
        f"sudo dd if=/dev/zero of={SWAP_PATH} bs=1M count={count}",
        user=ssh_user,
    )
    if not created:
        error("Failed to create swap file")

    script = dedent(f"""
        set -e
        sudo chmod 600 {SWAP_PATH}
        sudo mkswap {SWAP_PATH}
        sudo swapon {SWAP_PATH}
        if ! grep -q '{SWAP_PATH}' /etc/fstab; then
            echo '{SWAP_PATH} none swap sw 0 0' | sudo tee -a /etc/fstab > /dev/null
        fi
    """).strip()
    ssh_script(ip, script, user=ssh_user)

    if tune:
        tune_script = dedent("""
            set -e
            grep -q '^vm.swappiness' /etc/sysctl.conf || echo 'vm.swappiness=10' | sudo tee -a /etc/sysctl.conf > /dev/null
            grep -q '^vm.vfs_cache_pressure' /etc/sysctl.conf || echo 'vm.vfs_cache_pressure=50' | sudo tee -a /etc/sysctl.conf > /dev/null
            sudo sysctl vm.swappiness=10
            sudo sysctl vm.vfs_cache_pressure=50
        """).strip()
        ssh_script(ip, tune_script, user=ssh_user)
        success(f"{size} swap file configured with optimized settings")
    else:
        success(f"{size} swap file configured")


def parse_free_output(text: str) -> tuple[int, int]:
    """:return: (free + available RAM in MiB, used swap in MiB) from ``free -m``"""
    free_ram = used_swap = 0
    for line in text.splitlines():
        cols = line.split()
        if not cols:
            continue
        if cols[0] == "Mem:" and len(cols) >= 7:
            free_ram = int(cols[3]) + int(cols[6])
        elif cols[0] == "Swap:" and len(cols) >= 3:
            used_swap = int(cols[2])
    return free_ram, used_swap


def parse_df_available_mb(text: str) -> int:
    """Available MiB on the second line of ``df /`` (1K blocks)."""
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        return 0
    return int(lines[1].split()[3]) // 1024


def read_memory_stats(ip: str, ssh_user: str = DEFAULT_SSH_USER) -> dict:
    """Free RAM, used swap and free disk on / as seen by the host."""
    free_ram, used_swap = parse_free_output(ssh(ip, "free -m", user=ssh_user))
    avail_disk = parse_df_available_mb(ssh(ip, "df /", user=ssh_user))
    return {"free_ram": free_ram, "used_swap": used_swap, "avail_disk": avail_disk}


def check_swap_safety(
    free_ram: int, used_swap: int, required: int, avail_disk: int
) -> tuple[bool, list[str]]:
    """Decide whether swap can be recreated without losing data or filling the disk.

    Current swap must fit in free RAM while swap is turned off, and the new
    file must fit on disk.

    :return: (ok, messages) where messages explain every failed condition
    """
    messages = []
    ram_ok = used_swap < free_ram
    disk_ok = required < avail_disk

    if not ram_ok:
        messages.append(
            f"Not enough free RAM to offload current swap ({used_swap}MB used, {free_ram}MB available)"
        )
    if not disk_ok:
        messages.append(
            f"Not enough disk space for swap file ({required}MB required, {avail_disk}MB available)"
        )

    if ram_ok and disk_ok:
        messages.append("Safety check passed. Proceeding with swap creation...")
    elif ram_ok:
        messages.append(
            "Cannot create swap - insufficient disk space. "
            f"Free up at least {required - avail_disk}MB of disk space."
        )
    elif disk_ok:
        messages.append(
            "Cannot create swap - insufficient RAM to offload current swap. "
            "Close some applications or stop data processing first."
        )
    else:
        messages.append(
            "Cannot create swap - insufficient both RAM and disk space. "
            f"Need {used_swap - free_ram}MB more RAM and {required - avail_disk}MB more disk space."
        )
    return ram_ok and disk_ok, messages


def resize_swap(
    ip: str,
    size: str = "4G",
    *,
    path: str = SWAP_PATH,
    ssh_user: str = DEFAULT_SSH_USER,
):
    """Safely recreate the swap file at a new size.

    :param size: New swap size (e.g. "4G")
    :param path: Swap file path
    """
    required = parse_size_mb(size)
    stats = read_memory_stats(ip, ssh_user=ssh_user)
    log(f"Available RAM: {stats['free_ram']}MB")
    log(f"Used Swap: {stats['used_swap']}MB")
    log(f"Required Swap Size: {required}MB")
    log(f"Available Disk Space: {stats['avail_disk']}MB")

    ok, messages = check_swap_safety(
        stats["free_ram"], stats["used_swap"], required, stats["avail_disk"]
    )
    if not ok:
        error("\n".join(messages))
    log(messages[-1])

    log("Disabling swap...")
    if not ssh_ok(ip, f"sudo swapoff {path}", user=ssh_user) and ssh_ok(
        ip, f"swapon --show | grep -q '{path}'", user=ssh_user
    ):
        error(f"Failed to disable swap on {path}; it is still active")

    log(f"Resizing to {size}...")
    script = dedent(f"""
        set -e
        sudo rm -f {path}
        sudo fallocate -l {required}M {path} || sudo dd if=/dev/zero of={path} bs=1M count={required}
        sudo chmod 600 {path}
        sudo mkswap {path}
        sudo swapon {path}
        if ! grep -q '{path}' /etc/fstab; then
            echo '{path} none swap sw 0 0' | sudo tee -a /etc/fstab > /dev/null
        fi
    """).strip()
    ssh_script(ip, script, user=ssh_user, show_output=True)
    success(f"Swap resized to {size}")
    print(ssh(ip, "free -h", user=ssh_user))

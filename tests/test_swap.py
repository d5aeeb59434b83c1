import pytest

from provisionvm import swap

IP = "203.0.113.10"

FREE_M = """\
               total        used        free      shared  buff/cache   available
Mem:            3912        1200         800          12        1911        2400
Swap:           2047         300        1747
"""

DF = """\
Filesystem     1K-blocks     Used Available Use% Mounted on
/dev/vda1       51474912 20000000  10485760  40% /
"""


@pytest.mark.parametrize("size, mb", [("2G", 2048), ("512M", 512), ("4g", 4096), ("3", 3072)])
def test_parse_size_mb(size, mb):
    assert swap.parse_size_mb(size) == mb


def test_parse_size_rejects_garbage():
    with pytest.raises(ValueError):
        swap.parse_size_mb("lots")


def test_parse_free_output():
    assert swap.parse_free_output(FREE_M) == (800 + 2400, 300)


def test_parse_df_available_mb():
    assert swap.parse_df_available_mb(DF) == 10240


def test_safety_passes():
    ok, messages = swap.check_swap_safety(free_ram=3000, used_swap=300, required=4096, avail_disk=10000)
    assert ok
    assert messages[-1].startswith("Safety check passed")


def test_safety_low_disk():
    ok, messages = swap.check_swap_safety(free_ram=3000, used_swap=300, required=4096, avail_disk=1000)
    assert not ok
    assert "Free up at least 3096MB" in messages[-1]


def test_safety_low_ram():
    ok, messages = swap.check_swap_safety(free_ram=100, used_swap=300, required=1024, avail_disk=10000)
    assert not ok
    assert "insufficient RAM" in messages[-1]


def test_safety_both_low():
    ok, messages = swap.check_swap_safety(free_ram=100, used_swap=300, required=4096, avail_disk=1000)
    assert not ok
    assert "Need 200MB more RAM and 3096MB more disk space" in messages[-1]


def test_setup_swap_skips_when_active(fake_host):
    swap.setup_swap(IP, "2G")
    assert not fake_host.ran("fallocate")


def test_setup_swap_creates_and_tunes(fresh_host):
    swap.setup_swap(IP, "2G")
    assert fresh_host.ran(r"^sudo fallocate -l 2048M /swapfile \|\| sudo dd .* count=2048$")
    assert fresh_host.ran(r"sudo mkswap /swapfile")
    assert fresh_host.ran(r"/swapfile none swap sw 0 0")
    assert fresh_host.ran(r"sudo sysctl vm.swappiness=10")


def test_setup_swap_without_tuning(fresh_host):
    swap.setup_swap(IP, "1G", tune=False)
    assert not fresh_host.ran("sysctl")


def test_setup_swap_create_failure(fresh_host):
    fresh_host.fail("fallocate")
    with pytest.raises(SystemExit):
        swap.setup_swap(IP)


def test_resize_swap(fake_host):
    fake_host.on(r"^free -m$", stdout=FREE_M)
    fake_host.on(r"^df /$", stdout=DF)
    swap.resize_swap(IP, "4G")
    assert fake_host.ran(r"^sudo swapoff /swapfile$")
    script = next(cmd for cmd in fake_host.commands if "mkswap" in cmd)
    assert script.index("sudo rm -f /swapfile") < script.index("sudo fallocate -l 4096M /swapfile")


def test_resize_swap_aborts_before_swapoff(fake_host):
    fake_host.on(r"^free -m$", stdout=FREE_M)
    fake_host.on(r"^df /$", stdout=DF.replace("10485760", "1024"))
    with pytest.raises(SystemExit):
        swap.resize_swap(IP, "4G")
    assert not fake_host.ran("swapoff")


def test_setup_swap_bare_number_is_gib(fresh_host):
    swap.setup_swap(IP, "3")
    assert fresh_host.ran(r"^sudo fallocate -l 3072M /swapfile \|\| sudo dd .* count=3072$")


def test_resize_swap_stops_when_swapoff_fails(fake_host):
    fake_host.on(r"^free -m$", stdout=FREE_M)
    fake_host.on(r"^df /$", stdout=DF)
    fake_host.fail(r"^sudo swapoff /swapfile$")
    with pytest.raises(SystemExit):
        swap.resize_swap(IP, "4G")
    assert not fake_host.ran("rm -f /swapfile")
    assert not fake_host.ran("mkswap")


def test_resize_swap_without_active_swap(fake_host):
    fake_host.on(r"^free -m$", stdout=FREE_M)
    fake_host.on(r"^df /$", stdout=DF)
    fake_host.fail(r"^sudo swapoff /swapfile$")
    fake_host.fail(r"swapon --show \| grep -q '/swapfile'")
    swap.resize_swap(IP, "4G")
    assert fake_host.ran("sudo mkswap /swapfile")

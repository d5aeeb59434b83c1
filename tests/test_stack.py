import pytest

from provisionvm import stack

IP = "203.0.113.10"


@pytest.mark.parametrize("version", ["8.0", "8.3", "8.4"])
def test_php_versions_for_static(version):
    assert stack.validate_php_version(version)


@pytest.mark.parametrize("version", ["7.4", "8.5", "8", "8.3.1", "php8.3"])
def test_php_versions_rejected(version):
    assert not stack.validate_php_version(version)


def test_laravel_needs_php_81():
    assert not stack.validate_php_version("8.0", minimum_minor=1)
    assert stack.validate_php_version("8.1", minimum_minor=1)


@pytest.mark.parametrize("version, ok", [("18", True), ("20", True), ("22", True), ("16", False), ("21", False)])
def test_node_versions(version, ok):
    assert stack.validate_node_version(version) is ok


def test_install_php_with_extensions(fresh_host):
    stack.install_php(IP, "8.3", ("mysql", "redis"))
    assert fresh_host.ran(r"add-apt-repository ppa:ondrej/php -y")
    assert fresh_host.ran(r"install -y php8.3 php8.3-cli php8.3-fpm php8.3-mysql php8.3-redis$")
    assert fresh_host.ran(r"systemctl enable php8.3-fpm")


def test_install_php_skips_when_installed(fake_host):
    stack.install_php(IP, "8.3")
    assert not fake_host.ran("add-apt-repository")


def test_install_php_repo_failure(fresh_host):
    fresh_host.fail("add-apt-repository")
    with pytest.raises(SystemExit):
        stack.install_php(IP, "8.2")


def test_install_nodejs_from_nodesource(fresh_host):
    fresh_host.on(r"node --version", stdout="v22.3.0\n")
    stack.install_nodejs(IP, "22")
    assert fresh_host.ran(r"^curl -fsSL https://deb.nodesource.com/setup_22.x \| sudo -E bash -$")
    assert fresh_host.ran(r"apt-get install -y nodejs$")


def test_install_nodejs_skips_matching_major(fake_host):
    fake_host.on(r"^node --version$", stdout="v20.11.1\n")
    stack.install_nodejs(IP, "20")
    assert not fake_host.ran("nodesource")


def test_install_nodejs_replaces_other_major(fake_host):
    fake_host.on(r"^node --version$", stdout="v18.19.0\n")
    stack.install_nodejs(IP, "20")
    assert fake_host.ran("setup_20.x")


def test_install_pm2_startup_is_best_effort(fresh_host):
    fresh_host.fail(r"pm2 startup")
    stack.install_pm2(IP)
    assert fresh_host.ran(r"^sudo npm install -g pm2$")
    assert fresh_host.ran(r"pm2 startup systemd -u root --hp /root")


def test_install_redis_tunes_memory(fresh_host):
    stack.install_redis(IP)
    assert fresh_host.ran(r"maxmemory 256mb")
    assert fresh_host.ran(r"maxmemory-policy allkeys-lru")
    assert fresh_host.ran(r"systemctl restart redis-server")


def test_install_redis_restart_failure(fresh_host):
    fresh_host.fail(r"restart redis-server")
    with pytest.raises(SystemExit):
        stack.install_redis(IP)


def test_install_composer_skips_when_present(fake_host):
    stack.install_composer(IP)
    assert not fake_host.ran("install -y composer")


def test_supervisor_writes_worker(fresh_host):
    stack.install_supervisor(IP, "shop", "/var/www/shop")
    conf = fresh_host.files["/etc/supervisor/conf.d/shop-worker.conf"]
    assert conf.startswith("[program:shop-worker]")
    assert "command=php /var/www/shop/artisan queue:work --sleep=3 --tries=3 --max-time=3600" in conf
    assert "numprocs=2" in conf
    assert "user=www-data" in conf

"""Site provisioning sequences for static, Laravel and Node.js sites."""

from textwrap import dedent

from rich import print

from .mysql import MysqlResult, install_database
from .nginx import (
    OK_STATUSES,
    activate_site,
    generate_laravel_config,
    generate_proxy_config,
    generate_static_config,
    install_nginx,
    setup_ssl,
    test_website,
    write_site_config,
)
from .server import (
    add_site_to_host,
    check_dns_resolution,
    check_sudo,
    ssh_ok,
    ssh_write_file,
    update_system,
)
from .stack import (
    LARAVEL_PHP_EXTENSIONS,
    install_composer,
    install_nodejs,
    install_nodejs_apt,
    install_php,
    install_pm2,
    install_redis,
    install_supervisor,
    php_package,
)
from .swap import setup_swap
from .types import HostData, SiteConfig, SiteType
from .utils import DEFAULT_SSH_USER, log, primary_domain, sanitize_db_name

SEPARATOR = "=" * 41


def yes_no(value: bool | None) -> str:
    return "yes" if value else "no"


class BaseSite:
    """Base class for site provisioning."""

    site_type: SiteType
    title: str

    def __init__(self, host: HostData, config: SiteConfig):
        """Initialize site.

        :param host: Resolved host data (ip, ssh_user)
        :param config: Collected site inputs
        """
        self.host = host
        self.ip = host["ip"]
        self.ssh_user = host.get("ssh_user", DEFAULT_SSH_USER)
        self.config = config
        self.app_name = config["app_name"]
        self.server_names = config["server_names"]
        self.domain = primary_domain(self.server_names)
        self.web_root = f"/var/www/{self.app_name}"
        self.dns_resolved = False
        self.ssl_installed = False
        self.test_results = ""
        self.database: MysqlResult | None = None

    def summary(self) -> list[tuple[str, str]]:
        """Rows for the confirmation table shown before provisioning."""
        return [
            ("App Name", self.app_name),
            ("Domain", self.server_names),
            ("Web Root", self.web_root),
        ]

    def record(self, host: HostData):
        """Store this site in a host record."""
        add_site_to_host(
            host,
            self.app_name,
            self.site_type,
            port=self.config.get("port") if self.site_type == "nodejs" else None,
            domain=self.server_names,
            web_root=self.web_root,
            php_version=self.config.get("php_version"),
            node_version=self.config.get("node_version"),
            database=self.database.db.db_name if self.database else None,
        )

    def provision(self):
        raise NotImplementedError

    def write_page(self, path: str, content: str):
        ssh_write_file(self.ip, path, content, user=self.ssh_user)

    def set_permissions(self, writable: str | None = None):
        ssh_ok(self.ip, f"sudo chown -R www-data:www-data {self.web_root}", user=self.ssh_user)
        ssh_ok(self.ip, f"sudo chmod -R 755 {self.web_root}", user=self.ssh_user)
        if writable:
            ssh_ok(self.ip, f"sudo chmod -R 775 {self.web_root}/{writable}", user=self.ssh_user)

    def publish(self, nginx_config: str, local_ok: tuple[str, ...] = OK_STATUSES):
        """Write and enable the nginx config, then SSL and the accessibility test."""
        write_site_config(self.ip, self.app_name, nginx_config, ssh_user=self.ssh_user)
        activate_site(self.ip, self.app_name, ssh_user=self.ssh_user)

        if self.config.get("install_ssl"):
            self.dns_resolved = check_dns_resolution(self.server_names)
            if self.dns_resolved:
                self.ssl_installed = setup_ssl(
                    self.ip,
                    self.server_names,
                    email=self.config.get("email"),
                    dns_resolved=True,
                    ssh_user=self.ssh_user,
                )
            else:
                log("Skipping SSL setup - DNS not resolved for domain")

        self.test_results = test_website(
            self.ip,
            self.server_names,
            dns_resolved=self.dns_resolved,
            ssl=self.ssl_installed,
            local_ok=local_ok,
            ssh_user=self.ssh_user,
        )

    def setup_database(self, flavor, ask_reinstall=None, ask_password=None):
        if not self.config.get("install_mysql"):
            log("MySQL installation skipped by user choice")
            return
        self.database = install_database(
            self.ip,
            self.app_name,
            flavor,
            reinstall=self.config.get("reinstall_mysql"),
            ask_reinstall=ask_reinstall,
            ask_password=ask_password,
            ssh_user=self.ssh_user,
        )

    def print_database(self):
        if self.database:
            print(f"  Database: {self.database.db.db_name}")
            print(f"  DB User: {self.database.db.db_user}")
            print(f"  Credentials: {self.database.credentials_path}")


class StaticSite(BaseSite):
    """Static website, optionally with PHP-FPM."""

    site_type = "static"
    title = "Static Website Setup Tool"

    @property
    def php_pkg(self) -> str | None:
        version = self.config.get("php_version")
        return php_package(version) if version else None

    def summary(self) -> list[tuple[str, str]]:
        rows = super().summary()
        rows.append(("PHP Support", yes_no(self.php_pkg)))
        if self.php_pkg:
            rows.append(("PHP Version", self.php_pkg))
        rows.append(("Install SSL", yes_no(self.config.get("install_ssl"))))
        return rows

    def setup_webroot(self):
        log(f"Creating web root: {self.web_root}")
        ssh_ok(self.ip, f"sudo mkdir -p {self.web_root}", user=self.ssh_user)
        self.set_permissions()
        if self.php_pkg:
            self.write_page(f"{self.web_root}/info.php", "<?php phpinfo(); ?>\n")
            self.write_page(
                f"{self.web_root}/index.html",
                f"<h1>Welcome to {self.app_name}</h1>"
                "<p>PHP is enabled. <a href='/info.php'>PHP Info</a></p>\n",
            )
        else:
            self.write_page(
                f"{self.web_root}/index.html",
                f"<h1>Welcome to {self.app_name}</h1><p>Static website is live!</p>\n",
            )

    def provision(self):
        check_sudo(self.ip, self.ssh_user)
        update_system(self.ip, ssh_user=self.ssh_user)
        install_nginx(self.ip, ssh_user=self.ssh_user)
        if self.php_pkg:
            install_php(self.ip, self.config["php_version"], ssh_user=self.ssh_user)
        self.setup_webroot()
        self.publish(
            generate_static_config(
                self.app_name, self.server_names, self.web_root, php_pkg=self.php_pkg
            )
        )
        self.show_instructions()

    def show_instructions(self):
        print()
        print("=" * 40)
        print(" Website setup completed successfully!")
        print(f" Web root : {self.web_root}")
        print(f" Nginx conf : /etc/nginx/sites-available/{self.app_name}.conf")
        if self.dns_resolved:
            print(f" URL : https://{self.domain}")
        else:
            print(f" Local test: Add '127.0.0.1 {self.domain}' to /etc/hosts")
        print("=" * 40)


LARAVEL_PLACEHOLDER = """\
<!DOCTYPE html>
<html>
<head>
    <title>Laravel Setup Ready</title>
    <style>
        body {{ font-family: Arial, sans-serif; text-align: center; padding: 50px; }}
        .container {{ max-width: 600px; margin: 0 auto; }}
        .status {{ color: #28a745; font-size: 24px; margin: 20px 0; }}
        .instructions {{ background: #f8f9fa; padding: 20px; border-radius: 5px; text-align: left; }}
        code {{ background: #e9ecef; padding: 2px 4px; border-radius: 3px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Laravel Infrastructure Ready</h1>
        <div class="status">&#10003; Server environment configured successfully</div>

        <div class="instructions">
            <h3>Next Steps:</h3>
            <ol>
                <li>Deploy your Laravel application to: <code><?php echo __DIR__ . '/..'; ?></code></li>
                <li>Run: <code>composer install</code></li>
                <li>Configure: <code>.env</code> file</li>
                <li>Run: <code>php artisan key:generate</code></li>
                <li>Run: <code>php artisan migrate</code></li>
                <li>Set permissions: <code>chown -R www-data:www-data storage bootstrap/cache</code></li>
            </ol>

            <h3>Database Configuration:</h3>
            <p>Database: <code>{db_name}</code></p>
            <p>Username: <code>{db_user}</code></p>
            <p>Password: <code>Check {credentials}</code></p>
        </div>
    </div>
</body>
</html>
"""


class LaravelSite(BaseSite):
    """Laravel infrastructure: PHP-FPM, Composer, optional MySQL, Redis and queue workers."""

    site_type = "laravel"
    title = "Laravel Infrastructure Setup"

    @property
    def php_pkg(self) -> str:
        return php_package(self.config["php_version"])

    def summary(self) -> list[tuple[str, str]]:
        rows = super().summary()
        rows += [
            ("PHP Version", self.php_pkg),
            ("MySQL", yes_no(self.config.get("install_mysql"))),
            ("Redis", yes_no(self.config.get("install_redis"))),
            ("Supervisor", yes_no(self.config.get("install_supervisor"))),
            ("SSL", yes_no(self.config.get("install_ssl"))),
        ]
        return rows

    def setup_webroot(self):
        log("Creating web root structure...")
        ssh_ok(
            self.ip,
            f"sudo mkdir -p {self.web_root}/public {self.web_root}/storage/logs",
            user=self.ssh_user,
        )
        db = self.database.db if self.database else None
        page = LARAVEL_PLACEHOLDER.format(
            db_name=db.db_name if db else f"{sanitize_db_name(self.app_name)}_db",
            db_user=db.db_user if db else f"{sanitize_db_name(self.app_name)}_user",
            credentials=f"/root/{self.app_name}_mysql_credentials.txt",
        )
        self.write_page(f"{self.web_root}/public/index.php", page)
        self.set_permissions(writable="storage")

    def provision(self, ask_reinstall=None, ask_password=None):
        check_sudo(self.ip, self.ssh_user)
        setup_swap(self.ip, "2G", ssh_user=self.ssh_user)
        update_system(self.ip, ssh_user=self.ssh_user, upgrade="always")
        install_nginx(self.ip, ssh_user=self.ssh_user)
        install_php(
            self.ip,
            self.config["php_version"],
            LARAVEL_PHP_EXTENSIONS,
            ssh_user=self.ssh_user,
        )
        install_composer(self.ip, ssh_user=self.ssh_user)
        install_nodejs_apt(self.ip, ssh_user=self.ssh_user)
        self.setup_database("laravel", ask_reinstall, ask_password)
        if self.config.get("install_redis"):
            install_redis(self.ip, ssh_user=self.ssh_user)
        if self.config.get("install_supervisor"):
            install_supervisor(self.ip, self.app_name, self.web_root, ssh_user=self.ssh_user)
        self.setup_webroot()
        log("Generating Laravel Nginx configuration...")
        self.publish(generate_laravel_config(self.server_names, self.web_root, self.php_pkg))
        self.show_instructions()

    def show_instructions(self):
        print()
        print(SEPARATOR)
        print(" Laravel Infrastructure Setup Complete!")
        print(SEPARATOR)
        print()
        print("Environment Details:")
        print(f"  Web Root: {self.web_root}")
        print(f"  PHP Version: {self.config['php_version']}")
        self.print_database()
        print()
        print("Website Test Results:")
        print(f"  {self.test_results}")
        print()
        print(dedent(f"""\
            Next Steps for Laravel Deployment:
              1. Upload/clone your Laravel project to: {self.web_root}
              2. cd {self.web_root}
              3. composer install --optimize-autoloader --no-dev
              4. cp .env.example .env
              5. php artisan key:generate
              6. Configure database in .env file
              7. php artisan migrate
              8. php artisan config:cache
              9. php artisan route:cache
              10. php artisan view:cache
              11. chown -R www-data:www-data storage bootstrap/cache
        """))
        if self.config.get("install_supervisor"):
            print("Queue Worker Setup:")
            print("  - After Laravel deployment, enable: supervisorctl reread && supervisorctl update")
            print()
        print(f"Test URL: http://{self.domain}")
        print(SEPARATOR)


NODEJS_PLACEHOLDER = """\
<!DOCTYPE html>
<html>
<head>
    <title>Next.js Setup Ready</title>
    <style>
        body {{ font-family: Arial, sans-serif; text-align: center; padding: 50px; background: #f5f5f5; }}
        .container {{ max-width: 600px; margin: 0 auto; background: white; padding: 40px; border-radius: 10px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }}
        .status {{ color: #28a745; font-size: 24px; margin: 20px 0; }}
        .instructions {{ background: #f8f9fa; padding: 20px; border-radius: 5px; text-align: left; margin: 20px 0; }}
        code {{ background: #e9ecef; padding: 2px 4px; border-radius: 3px; font-family: monospace; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Next.js Infrastructure Ready</h1>
        <div class="status">&#10003; Server environment configured successfully</div>

        <div class="instructions">
            <h3>Next Steps:</h3>
            <ol>
                <li>Deploy your Next.js application to: <code>{web_root}</code></li>
                <li>Run: <code>npm install</code></li>
                <li>Configure: <code>.env.local</code> file</li>
                <li>Run: <code>npm run build</code></li>
                <li>Start: <code>npm run start</code> or use PM2</li>
                <li>Set permissions: <code>chown -R www-data:www-data {web_root}</code></li>
            </ol>

            <h3>Database Configuration:</h3>
            <p>Database: <code>{db_name}</code></p>
            <p>Username: <code>{db_user}</code></p>
            <p>Credentials: <code>/root/{app_name}_mysql_credentials.txt</code></p>

            <h3>PM2 Commands:</h3>
            <p><code>pm2 start npm --name "{app_name}" -- start</code></p>
            <p><code>pm2 logs {app_name}</code></p>
        </div>

        <p><strong>Note:</strong> This placeholder will be replaced when your Next.js app starts on port {port}</p>
    </div>
</body>
</html>
"""


class NodejsSite(BaseSite):
    """Node.js (Next.js) infrastructure behind an nginx reverse proxy."""

    site_type = "nodejs"
    title = "Next.js Infrastructure Setup"

    @property
    def port(self) -> int:
        return self.config.get("port") or 3000

    def summary(self) -> list[tuple[str, str]]:
        rows = super().summary()
        rows += [
            ("Node.js", f"v{self.config['node_version']}"),
            ("Port", str(self.port)),
            ("MySQL", yes_no(self.config.get("install_mysql"))),
            ("Redis", yes_no(self.config.get("install_redis"))),
            ("PM2", yes_no(self.config.get("install_pm2"))),
            ("SSL", yes_no(self.config.get("install_ssl"))),
        ]
        return rows

    def setup_webroot(self):
        log("Creating web root structure...")
        ssh_ok(self.ip, f"sudo mkdir -p {self.web_root}", user=self.ssh_user)
        db = self.database.db if self.database else None
        page = NODEJS_PLACEHOLDER.format(
            web_root=self.web_root,
            app_name=self.app_name,
            db_name=db.db_name if db else "nextjs_db",
            db_user=db.db_user if db else "nextjs_user",
            port=self.port,
        )
        self.write_page(f"{self.web_root}/index.html", page)
        self.set_permissions()

    def provision(self, ask_reinstall=None, ask_password=None):
        check_sudo(self.ip, self.ssh_user)
        setup_swap(self.ip, "2G", ssh_user=self.ssh_user)
        update_system(self.ip, ssh_user=self.ssh_user)
        install_nginx(self.ip, ssh_user=self.ssh_user)
        install_nodejs(self.ip, self.config["node_version"], ssh_user=self.ssh_user)
        if self.config.get("install_pm2"):
            install_pm2(self.ip, ssh_user=self.ssh_user)
        self.setup_database("nodejs", ask_reinstall, ask_password)
        if self.config.get("install_redis"):
            install_redis(self.ip, ssh_user=self.ssh_user)
        self.setup_webroot()
        log("Generating Next.js Nginx configuration...")
        # 502 until the app itself is started on the upstream port
        self.publish(
            generate_proxy_config(self.app_name, self.server_names, self.web_root, self.port),
            local_ok=OK_STATUSES + ("502",),
        )
        self.show_instructions()

    def show_instructions(self):
        name = self.app_name
        print()
        print(SEPARATOR)
        print(" Next.js Infrastructure Setup Complete!")
        print(SEPARATOR)
        print()
        print("Environment Details:")
        print(f"  Web Root: {self.web_root}")
        print(f"  Node.js Version: v{self.config['node_version']}")
        self.print_database()
        print()
        print("Website Test Results:")
        print(f"  {self.test_results}")
        print()
        print(dedent(f"""\
            Next Steps for Next.js Deployment:
              1. Upload/clone your Next.js project to: {self.web_root}
              2. cd {self.web_root}
              3. npm install
              4. Create .env.local with database credentials
              5. npm run build
              6. npm run start (or use PM2: pm2 start npm --name '{name}' -- start)
              7. chown -R www-data:www-data {self.web_root}
        """))
        if self.config.get("install_pm2"):
            print("PM2 Commands:")
            print(f"  - Start: pm2 start npm --name '{name}' -- start")
            print(f"  - Stop: pm2 stop {name}")
            print(f"  - Restart: pm2 restart {name}")
            print(f"  - Logs: pm2 logs {name}")
            print()
        print(f"Test URL: http://{self.domain}")
        print(SEPARATOR)


SITE_CLASSES: dict[str, type[BaseSite]] = {
    "static": StaticSite,
    "laravel": LaravelSite,
    "nodejs": NodejsSite,
}

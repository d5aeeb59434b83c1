"""Nginx site configuration, activation, Let's Encrypt SSL and accessibility tests."""

from textwrap import dedent, indent

from rich import print

from .server import (
    APT,
    apt_install,
    check_dns_resolution,
    enable_service,
    ensure_web_firewall,
    get_server_ips,
    is_installed,
    remote_http_status,
    ssh_ok,
    ssh_write_file,
)
from .utils import DEFAULT_SSH_USER, error, get_default_email, log, primary_domain, skip, success

NGINX_AVAIL = "/etc/nginx/sites-available"
NGINX_ENABLED = "/etc/nginx/sites-enabled"
OK_STATUSES = ("200", "301", "302")

ASSET_EXTENSIONS = "css|js|png|jpg|jpeg|gif|ico|svg|woff|woff2|ttf|eot"


def install_nginx(ip: str, *, idempotent: bool = True, ssh_user: str = DEFAULT_SSH_USER):
    """Install, enable and start nginx.

    :param idempotent: Skip when the package is already installed
    """
    if idempotent and is_installed(ip, "nginx", ssh_user=ssh_user):
        skip("Nginx")
        return

    log("Installing Nginx...")
    if not apt_install(ip, "nginx", ssh_user=ssh_user):
        error("Failed to install Nginx")
    enable_service(ip, "nginx", "Nginx", ssh_user=ssh_user)
    success("Nginx installed and started")


def _php_location(php_pkg: str, script_root: str) -> str:
    return dedent(f"""
        location ~ \\.php$ {{
            include snippets/fastcgi-php.conf;
            fastcgi_pass unix:/var/run/php/{php_pkg}-fpm.sock;
            fastcgi_param SCRIPT_FILENAME ${script_root}$fastcgi_script_name;
            include fastcgi_params;
        }}
    """).strip()


def generate_static_config(
    app_name: str, server_names: str, web_root: str, php_pkg: str | None = None
) -> str:
    """Generate a static site server block, optionally with PHP-FPM.

    :param php_pkg: PHP package name (e.g. php8.3) to enable PHP processing
    """
    index = "index.html index.htm index.php" if php_pkg else "index.html index.htm"
    php_block = ""
    if php_pkg:
        php_block = "\n" + indent(
            "# PHP processing\n"
            + _php_location(php_pkg, "document_root")
            + "\n\n# Deny access to .htaccess files\nlocation ~ /\\.ht {\n    deny all;\n}\n",
            "    ",
        )

    head = dedent(f"""
        server {{
            listen 80;
            server_name {server_names};
            root {web_root};
            index {index};

            # Security headers
            add_header X-Frame-Options "SAMEORIGIN" always;
            add_header X-XSS-Protection "1; mode=block" always;
            add_header X-Content-Type-Options "nosniff" always;

            # Static files
            location / {{
                try_files $uri $uri/ =404;
            }}

            # Assets caching
            location ~* \\.({ASSET_EXTENSIONS})$ {{
                expires 1y;
                add_header Cache-Control "public, immutable";
            }}
    """).lstrip()
    return head + php_block + "}"


def generate_laravel_config(server_names: str, web_root: str, php_pkg: str) -> str:
    """Generate the Laravel server block (front controller in public/).

    A single bare domain also gets its www. alias.
    """
    names = server_names.split()
    if len(names) == 1 and not names[0].startswith("www."):
        names.append(f"www.{names[0]}")
    server_name = " ".join(names)
    return dedent(f"""
        server {{
            listen 80;
            server_name {server_name};
            root {web_root}/public;
            index index.php index.html;

            # Security headers
            add_header X-Frame-Options "SAMEORIGIN" always;
            add_header X-XSS-Protection "1; mode=block" always;
            add_header X-Content-Type-Options "nosniff" always;
            add_header Referrer-Policy "no-referrer-when-downgrade" always;
            add_header Content-Security-Policy "default-src 'self' http: https: data: blob: 'unsafe-inline'" always;

            # Laravel routing
            location / {{
                try_files $uri $uri/ /index.php?$query_string;
            }}

            # PHP processing
            location ~ \\.php$ {{
                include snippets/fastcgi-php.conf;
                fastcgi_pass unix:/var/run/php/{php_pkg}-fpm.sock;
                fastcgi_param SCRIPT_FILENAME $realpath_root$fastcgi_script_name;
                include fastcgi_params;

                fastcgi_hide_header X-Powered-By;
                fastcgi_read_timeout 300;
                fastcgi_buffer_size 128k;
                fastcgi_buffers 4 256k;
                fastcgi_busy_buffers_size 256k;
            }}

            # Assets caching
            location ~* \\.({ASSET_EXTENSIONS})$ {{
                expires 1y;
                add_header Cache-Control "public, immutable";
                access_log off;
            }}

            # Deny access to sensitive files
            location ~ /\\.(ht|env) {{
                deny all;
            }}

            location ~ /storage/.*\\.php$ {{
                deny all;
            }}

            # Gzip compression
            gzip on;
            gzip_vary on;
            gzip_min_length 1024;
            gzip_types text/plain text/css text/xml text/javascript application/javascript application/xml+rss application/json;
        }}
    """).strip()


def generate_proxy_config(
    app_name: str, server_names: str, web_root: str, port: int = 3000
) -> str:
    """Generate a reverse proxy server block for a Node.js app on 127.0.0.1:<port>."""
    return dedent(f"""
        server {{
            listen 80;
            listen [::]:80;

            server_name {server_names};
            root {web_root};

            access_log /var/log/nginx/{app_name}_access.log;
            error_log /var/log/nginx/{app_name}_error.log;

            location ~ /.well-known {{
                auth_basic off;
                allow all;
            }}

            index index.html;

            location / {{
                proxy_pass http://127.0.0.1:{port}/;
                proxy_http_version 1.1;
                proxy_set_header X-Forwarded-Host $host;
                proxy_set_header X-Forwarded-Server $host;
                proxy_set_header X-Real-IP $remote_addr;
                proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
                proxy_set_header X-Forwarded-Proto $scheme;
                proxy_set_header Host $host;
                proxy_set_header Upgrade $http_upgrade;
                proxy_set_header Connection $http_connection;
                proxy_pass_request_headers on;
                proxy_max_temp_file_size 0;
                proxy_connect_timeout 900;
                proxy_send_timeout 900;
                proxy_read_timeout 900;
                proxy_buffer_size 128k;
                proxy_buffers 4 256k;
                proxy_busy_buffers_size 256k;
                proxy_temp_file_write_size 256k;
            }}
        }}
    """).strip()


def write_site_config(ip: str, app_name: str, config: str, ssh_user: str = DEFAULT_SSH_USER) -> str:
    """:return: Remote path of the written config"""
    path = f"{NGINX_AVAIL}/{app_name}.conf"
    log("Generating Nginx configuration...")
    ssh_write_file(ip, path, config + "\n", user=ssh_user)
    return path


def activate_site(ip: str, app_name: str, ssh_user: str = DEFAULT_SSH_USER):
    """Enable the site, drop the default site and reload nginx after a config test."""
    log("Activating site...")
    ssh_ok(
        ip,
        f"sudo ln -sf {NGINX_AVAIL}/{app_name}.conf {NGINX_ENABLED}/{app_name}.conf",
        user=ssh_user,
    )
    ssh_ok(ip, f"sudo rm -f {NGINX_ENABLED}/default", user=ssh_user)

    if not ssh_ok(ip, "sudo nginx -t", user=ssh_user):
        error("Nginx configuration test failed")

    ssh_ok(ip, "sudo systemctl reload nginx", user=ssh_user)
    ensure_web_firewall(ip, ssh_user=ssh_user)


def setup_ssl(
    ip: str,
    server_names: str,
    *,
    email: str | None = None,
    staging: bool = False,
    dns_resolved: bool | None = None,
    ssh_user: str = DEFAULT_SSH_USER,
) -> bool:
    """Obtain a Let's Encrypt certificate via the certbot nginx plugin.

    Skipped when the primary domain does not resolve. A certbot failure is
    logged but does not abort the run.

    :param server_names: Space separated domains (certbot gets all of them)
    :param email: Registration email (default: PROVISIONVM_EMAIL or admin@<primary domain>)
    :param staging: Use the Let's Encrypt staging environment
    :param dns_resolved: Result of an earlier DNS check; resolved here when None
    :return: True if a certificate was installed
    """
    if dns_resolved is None:
        dns_resolved = check_dns_resolution(server_names)
    if not dns_resolved:
        log("Skipping SSL setup - DNS not resolved for domain")
        return False

    log("Installing Certbot...")
    ssh_ok(ip, f"{APT} install -y certbot python3-certbot-nginx", user=ssh_user)

    email = email or get_default_email(server_names)
    domains = ",".join(server_names.split())
    staging_flag = "--staging " if staging else ""
    log("Requesting SSL certificate...")
    if ssh_ok(
        ip,
        f"sudo certbot --nginx {staging_flag}-d {domains} "
        f"--non-interactive --agree-tos --email {email}",
        user=ssh_user,
    ):
        ssh_ok(ip, "sudo systemctl reload nginx", user=ssh_user)
        success("SSL certificate installed successfully")
        return True

    log("[red]SSL certificate installation failed[/red]")
    return False


def test_website(
    ip: str,
    server_names: str,
    *,
    dns_resolved: bool,
    ssl: bool,
    local_ok: tuple[str, ...] = OK_STATUSES,
    test_server_ip: bool = True,
    ssh_user: str = DEFAULT_SSH_USER,
) -> str:
    """Check the site responds and summarise the results.

    With DNS in place the domain is requested over HTTPS (when SSL was
    installed) and HTTP. Without DNS the site is requested on the host with a
    Host header, via localhost and via the server IP.

    :param local_ok: Status codes accepted for the local test
    :param test_server_ip: Also test via the server's first IP when DNS is not resolved
    :return: Summary such as "HTTPS: ✓ Working | HTTP: ✓ Working"
    """
    log("Testing website accessibility...")
    domain = primary_domain(server_names)
    results = []

    print()
    print("=== WEBSITE ACCESSIBILITY TEST ===")

    if dns_resolved:
        log(f"Testing via domain: {domain}")
        if ssl:
            status = remote_http_status(ip, f"https://{domain}", ssh_user=ssh_user)
            if status in OK_STATUSES:
                print(f"✓ HTTPS accessible: https://{domain} (Status: {status})")
                results.append("HTTPS: ✓ Working")
            else:
                print(f"✗ HTTPS failed: https://{domain} (Status: {status})")
                results.append(f"HTTPS: ✗ Failed ({status})")

        status = remote_http_status(ip, f"http://{domain}", ssh_user=ssh_user)
        if status in OK_STATUSES:
            print(f"✓ HTTP accessible: http://{domain} (Status: {status})")
            results.append("HTTP: ✓ Working")
        else:
            print(f"✗ HTTP failed: http://{domain} (Status: {status})")
            results.append(f"HTTP: ✗ Failed ({status})")
    else:
        log("DNS not resolved - testing local accessibility")
        status = remote_http_status(ip, "http://localhost", host=domain, ssh_user=ssh_user)
        if status in local_ok:
            print(f"✓ Local test successful: http://localhost (Status: {status})")
            print(f"  Add to /etc/hosts: 127.0.0.1 {domain}")
            results.append(f"Local: ✓ Working (Status: {status})")
        else:
            print(f"✗ Local test failed: http://localhost (Status: {status})")
            results.append(f"Local: ✗ Failed ({status})")

        server_ips = get_server_ips(ip, ssh_user=ssh_user) if test_server_ip else []
        if server_ips:
            server_ip = server_ips[0]
            status = remote_http_status(ip, f"http://{server_ip}", host=domain, ssh_user=ssh_user)
            if status in local_ok:
                print(f"✓ IP test successful: http://{server_ip} (Status: {status})")
                results.append("IP: ✓ Working")
            else:
                print(f"✗ IP test failed: http://{server_ip} (Status: {status})")
                results.append(f"IP: ✗ Failed ({status})")

    print("==============================")
    print()
    return " | ".join(results)

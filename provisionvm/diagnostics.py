"""Troubleshooting bundle: system, service, config, log and network reports.

Everything is gathered from the target host over SSH and written to a local
``troubleshoot_<timestamp>`` directory together with a session log.
"""

import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from textwrap import dedent

from rich import print
from rich.markup import escape
from rich.text import Text

from .server import ssh_ok, ssh_read_file, ssh_script
from .types import AppType
from .utils import DEFAULT_SSH_USER, error, log, logger

APP_TYPES: tuple[AppType, ...] = ("wordpress", "magento", "laravel", "php", "custom")

APP_PATTERNS = {
    "wordpress": ("WORDPRESS SPECIFIC", r"wp-|wordpress|plugin|theme"),
    "magento": ("MAGENTO SPECIFIC", r"magento|mage|exception"),
    "laravel": ("LARAVEL SPECIFIC", r"laravel|artisan|illuminate"),
}
ERROR_PATTERN = r"error|fatal|critical|emergency"
WARNING_PATTERN = r"warning|warn"
PERFORMANCE_PATTERN = r"timeout|slow|memory|limit|502|503|504"

SERVICES = ["nginx", "apache2", "mysql", "mariadb", "redis", "memcached"] + [
    f"php{v}-fpm" for v in ("8.4", "8.3", "8.2", "8.1", "8.0", "7.4")
]

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
TIME_RANGES = {"1h": 1, "6h": 6, "24h": 24}
# lines read from the end of each log
LOG_TAIL_LINES = 200_000

REPORT_LOG = "troubleshoot_report.log"
SYSTEM_INFO = "system_info.txt"
SERVICE_STATUS = "service_status.txt"
CONFIG_ANALYSIS = "config_analysis.txt"
LOG_ANALYSIS = "log_analysis.txt"
NETWORK_INFO = "network_info.txt"

# (regex, strptime format) for timestamps commonly found in web stack logs
TIMESTAMP_FORMATS = [
    (re.compile(r"\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}"), None),
    (re.compile(r"\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2}"), "%Y/%m/%d %H:%M:%S"),
    (re.compile(r"\d{2}/[A-Z][a-z]{2}/\d{4}:\d{2}:\d{2}:\d{2}"), "%d/%b/%Y:%H:%M:%S"),
    (re.compile(r"\d{2}-[A-Z][a-z]{2}-\d{4} \d{2}:\d{2}:\d{2}"), "%d-%b-%Y %H:%M:%S"),
]


class PlainFormatter(logging.Formatter):
    """Formatter that strips rich markup so the report log stays plain text."""

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        record.msg = Text.from_markup(record.getMessage()).plain
        record.args = None
        return super().format(record)


def session_dir(base: Path = Path("."), now: datetime | None = None) -> Path:
    now = now or datetime.now()
    out_dir = Path(base) / f"troubleshoot_{now.strftime('%Y%m%d_%H%M%S')}"
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir


def attach_report_log(out_dir: Path) -> logging.Handler:
    """Mirror provisionvm log records into <out_dir>/troubleshoot_report.log."""
    handler = logging.FileHandler(out_dir / REPORT_LOG)
    handler.setFormatter(PlainFormatter("[%(asctime)s] %(levelname)s: %(message)s", TIME_FORMAT))
    logger.addHandler(handler)
    return handler


def time_range(
    choice: str,
    start: str | None = None,
    end: str | None = None,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Resolve a log analysis window.

    :param choice: "1h", "6h", "24h" or "custom"
    :param start: Custom start as YYYY-MM-DD HH:MM:SS
    :param end: Custom end as YYYY-MM-DD HH:MM:SS or "now" (default: now)
    """
    now = (now or datetime.now()).replace(microsecond=0)
    if choice in TIME_RANGES:
        return now - timedelta(hours=TIME_RANGES[choice]), now
    if choice != "custom":
        error(f"Invalid time range: {choice}")
    if not start:
        error("Custom time range needs a start time")
    try:
        start_dt = datetime.strptime(start, TIME_FORMAT)
        end_dt = now if end in (None, "", "now") else datetime.strptime(end, TIME_FORMAT)
    except ValueError:
        error("Times must be given as YYYY-MM-DD HH:MM:SS")
    return start_dt, end_dt


def format_range(start: datetime, end: datetime) -> str:
    return f"{start.strftime(TIME_FORMAT)} to {end.strftime(TIME_FORMAT)}"


def parse_timestamp(line: str) -> datetime | None:
    """First recognisable timestamp in a log line, or None."""
    for pattern, fmt in TIMESTAMP_FORMATS:
        match = pattern.search(line)
        if not match:
            continue
        text = match.group(0)
        try:
            if fmt is None:
                return datetime.fromisoformat(text.replace("T", " "))
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def in_range(line: str, start: datetime | None, end: datetime | None) -> bool:
    """Lines without a timestamp are kept."""
    stamp = parse_timestamp(line)
    if stamp is None:
        return True
    if start and stamp < start:
        return False
    if end and stamp > end:
        return False
    return True


def _grep(lines: list[str], pattern: str, limit: int) -> list[str]:
    regex = re.compile(pattern, re.IGNORECASE)
    return [line for line in lines if regex.search(line)][-limit:]


def analyze_log(
    text: str,
    app_type: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> str:
    """Pattern sections for one log file, restricted to the time window."""
    lines = [line for line in text.splitlines() if in_range(line, start, end)]

    sections = [
        ("ERROR PATTERNS", _grep(lines, ERROR_PATTERN, 20)),
        ("WARNING PATTERNS", _grep(lines, WARNING_PATTERN, 10)),
    ]
    if app_type in APP_PATTERNS:
        title, pattern = APP_PATTERNS[app_type]
        sections.append((title, _grep(lines, pattern, 10)))
    sections.append(("PERFORMANCE INDICATORS", _grep(lines, PERFORMANCE_PATTERN, 10)))

    out = []
    for title, matches in sections:
        out.append(f"--- {title} ---")
        out.extend(matches)
        out.append("")
    return "\n".join(out)


def filter_config(text: str, prefix: str) -> list[str]:
    """Config lines starting with prefix (case-insensitive), or all effective lines for "all"."""
    lines = text.splitlines()
    if prefix == "all":
        return [
            line for line in lines
            if line.strip() and not line.lstrip().startswith((";", "#"))
        ]
    lowered = prefix.lower()
    return [line for line in lines if line.lstrip().lower().startswith(lowered)]


def collect_system_info(ip: str, ssh_user: str = DEFAULT_SSH_USER) -> str:
    log("Collecting system information...")
    script = dedent("""
        echo "=== SYSTEM INFORMATION ==="
        echo "Timestamp: $(date)"
        echo "Hostname: $(hostname)"
        echo "Uptime: $(uptime)"
        echo "Load Average: $(cat /proc/loadavg)"
        echo "Memory Usage:"
        free -h
        echo
        echo "Disk Usage:"
        df -h
        echo
        echo "Active Processes (Top 10 CPU):"
        ps aux --sort=-%cpu | head -11
        echo
        echo "Active Processes (Top 10 Memory):"
        ps aux --sort=-%mem | head -11
        echo
    """).strip()
    return ssh_script(ip, script, user=ssh_user)


def check_services(ip: str, ssh_user: str = DEFAULT_SSH_USER) -> str:
    """Status of installed web stack units, with memory for the active ones."""
    log("Checking service status...")
    script = dedent(f"""
        echo "=== SERVICE STATUS ==="
        units=$(systemctl list-unit-files 2>/dev/null)
        for service in {' '.join(SERVICES)}; do
            if echo "$units" | grep -q "^$service.service"; then
                echo "$service: $(systemctl is-active $service 2>/dev/null || true)"
                if systemctl is-active --quiet $service; then
                    mem=$(systemctl show $service --property=MemoryCurrent --value 2>/dev/null | numfmt --to=iec 2>/dev/null)
                    echo "  Memory: ${{mem:-N/A}}"
                fi
            fi
        done
        echo
    """).strip()
    return ssh_script(ip, script, user=ssh_user)


def check_connectivity(ip: str, ssh_user: str = DEFAULT_SSH_USER) -> str:
    log("Checking network connectivity...")
    script = dedent("""
        echo "=== NETWORK CONNECTIVITY ==="
        echo "Active connections:"
        (ss -tuln 2>/dev/null || netstat -tuln 2>/dev/null) | grep LISTEN | head -20
        echo
        echo "Network interfaces:"
        ip addr show 2>/dev/null | grep -E "inet |UP|DOWN"
        echo
        echo "DNS resolution test:"
        (nslookup google.com 2>/dev/null || getent hosts google.com) | head -10
        echo
    """).strip()
    return ssh_script(ip, script, user=ssh_user)


def readable_paths(ip: str, paths: list[str], ssh_user: str = DEFAULT_SSH_USER) -> list[str]:
    """Keep the paths the host can read, reporting the others."""
    kept = []
    for path in paths:
        if ssh_ok(ip, f"sudo test -r {path}", user=ssh_user):
            print(f"  ✓ Added: {path}")
            kept.append(path)
        else:
            print(f"  ✗ Cannot read: {path} (skipping)")
    return kept


def recommendations(log_analysis: str, out_dir: Path) -> list[str]:
    text = log_analysis.lower()
    tips = []
    if "memory" in text:
        tips.append("Memory issues detected - Check PHP memory_limit and server RAM")
    if "timeout" in text:
        tips.append("Timeout issues detected - Check max_execution_time and server performance")
    if re.search(r"502|503|504", text):
        tips.append("Gateway errors detected - Check PHP-FPM and web server configuration")
    tips += [
        f"Review detailed logs in: {out_dir}/",
        f"Check service status in: {out_dir / SERVICE_STATUS}",
        f"Analyze configurations in: {out_dir / CONFIG_ANALYSIS}",
    ]
    return tips


def run_diagnostics(
    ip: str,
    app_type: AppType,
    *,
    log_paths: list[str],
    configs: dict[str, str],
    start: datetime,
    end: datetime,
    base: Path = Path("."),
    ssh_user: str = DEFAULT_SSH_USER,
) -> Path:
    """Collect the troubleshooting bundle for a host.

    :param app_type: Application type selecting the app-specific log patterns
    :param log_paths: Remote log files to analyse
    :param configs: Remote config path -> prefix to search ("all" for every setting)
    :param start: Log window start
    :param end: Log window end
    :param base: Local directory receiving troubleshoot_<timestamp>/
    :return: The output directory
    """
    out_dir = session_dir(base)
    handler = attach_report_log(out_dir)
    try:
        log(f"Troubleshooting session started - Output directory: {out_dir}")
        log(f"Application type: {app_type}")
        window = format_range(start, end)
        log(f"Time range: {window}")
        log("Starting analysis...")

        (out_dir / SYSTEM_INFO).write_text(collect_system_info(ip, ssh_user))
        print(f"✓ System info saved to {SYSTEM_INFO}")

        (out_dir / SERVICE_STATUS).write_text(check_services(ip, ssh_user))
        print(f"✓ Service status saved to {SERVICE_STATUS}")

        log("Analyzing configuration files...")
        config_report = []
        for path, prefix in configs.items():
            text = ssh_read_file(ip, path, user=ssh_user)
            matches = filter_config(text or "", prefix)
            print(f"\n--- {path} ---")
            if prefix == "all":
                print("Full configuration:")
                print(escape("\n".join(matches[:50])))
            else:
                print(f"Configuration for '{prefix}':")
                print(escape("\n".join(matches)) if matches else "No matches found")
            config_report += [f"=== {path} ===", *matches, ""]
        (out_dir / CONFIG_ANALYSIS).write_text("\n".join(config_report))

        log(f"Analyzing log files for time range: {window}")
        log_report = ["=== LOG ANALYSIS ===", f"Time Range: {window}", ""]
        for path in log_paths:
            log_report.append(f"=== {path} ===")
            text = ssh_read_file(ip, path, user=ssh_user, tail=LOG_TAIL_LINES)
            if text is None:
                log_report.append(f"Log file not accessible: {path}")
            else:
                log_report.append(analyze_log(text, app_type, start, end))
            log_report += ["===========================================", ""]
        analysis = "\n".join(log_report)
        (out_dir / LOG_ANALYSIS).write_text(analysis)
        print(f"✓ Log analysis saved to {LOG_ANALYSIS}")

        (out_dir / NETWORK_INFO).write_text(check_connectivity(ip, ssh_user))
        print(f"✓ Network info saved to {NETWORK_INFO}")

        log("Generating summary report...")
        print()
        print("=== TROUBLESHOOTING SUMMARY ===")
        print(f"Application Type: {app_type}")
        print(f"Time Range: {window}")
        print(f"Output Directory: {out_dir}")
        print()
        print("Generated Files:")
        for path in sorted(out_dir.iterdir()):
            print(f"  {path.name} ({path.stat().st_size} bytes)")
        print()
        print("Quick Recommendations:")
        for tip in recommendations(analysis, out_dir):
            print(f"• {tip}")
        log("Troubleshooting completed successfully")
    finally:
        logger.removeHandler(handler)
        handler.close()
    return out_dir

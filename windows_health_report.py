# -*- coding: utf-8 -*-
#!/usr/bin/env python3
"""
Windows Health Report Script

Collects Error/Warning entries from the Windows event logs, disk/volume
health, network latency and uptime, diffs event counts against the previous
run and renders a single self-contained HTML report.

Files written (all overwritten each run):
  1. HealthReport.html      - the report
  2. event_snapshot.json    - per-event-group counts for the next run's diff
  3. last_run.txt           - completion timestamp of the last report
  4. HealthReport.log       - operational log, rotated to -1, -2, ... per run

Every source or file failure is logged and the run still exits 0; a report
that cannot be written is reported as [FAIL] on the console.
"""

import argparse
import datetime
import html
import json
import logging
import os
import socket
import subprocess
import sys
from collections.abc import Callable, Iterable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import TypeAlias

try:
    import psutil
except ImportError:
    print("[ERROR] psutil not installed. Run: pip install psutil")
    sys.exit(1)

import yaml

_LOG = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
SCRIPT_DIR = Path(__file__).resolve().parent
HOSTNAME = socket.gethostname()
TIME_FMT = "%Y-%m-%d %H:%M:%S"

# Get-WinEvent level numbers; LevelDisplayName is localized so map ourselves
LEVEL_NAMES = {1: "Critical", 2: "Error", 3: "Warning", 4: "Information"}

NO_CHANGE = "No change"
UNKNOWN = "Unknown"
NOT_AVAILABLE = "N/A"
GIB = 1024**3

DEFAULT_CONFIG: dict = {
    "channels": ["System", "Application"],
    "levels": [2, 3],
    "lookback_hours": None,  # None = since start of the current day
    "ping": {"target": "8.8.8.8", "count": 4},
    "logging": {"max_files": 5, "verbose": False},
    "output": {
        "dir": None,  # None = next to this script
        "report": "HealthReport.html",
        "snapshot": "event_snapshot.json",
        "last_run": "last_run.txt",
        "log": "HealthReport.log",
    },
}

# Snapshot mapping "id-provider" -> count, persisted between runs
RunSnapshot: TypeAlias = dict[str, int]


@dataclass
class ReportConfig:
    channels: list[str]
    levels: list[int]
    lookback_hours: float | None
    ping_target: str
    ping_count: int
    max_log_files: int
    verbose: bool
    report_path: Path
    snapshot_path: Path
    last_run_path: Path
    log_path: Path
    ping_enabled: bool = True

    @classmethod
    def from_dict(cls, cfg: dict) -> "ReportConfig":
        """Build the config, replacing any invalid value by its default."""
        out_dir = _setting(cfg, "output", "dir", _as_optional_path) or SCRIPT_DIR

        def resolve(name: str) -> Path:
            p = _setting(cfg, "output", name, _as_path)
            return p if p.is_absolute() else out_dir / p

        return cls(
            channels=_setting(cfg, None, "channels", _as_str_list),
            levels=_setting(cfg, None, "levels", _as_int_list),
            lookback_hours=_setting(cfg, None, "lookback_hours", _as_hours),
            ping_target=_setting(cfg, "ping", "target", _as_str),
            ping_count=_setting(cfg, "ping", "count", lambda v: max(1, _as_int(v))),
            max_log_files=_setting(cfg, "logging", "max_files", lambda v: max(0, _as_int(v))),
            verbose=_setting(cfg, "logging", "verbose", bool),
            report_path=resolve("report"),
            snapshot_path=resolve("snapshot"),
            last_run_path=resolve("last_run"),
            log_path=resolve("log"),
        )


@dataclass(frozen=True)
class RunContext:
    """Per-process run information, passed explicitly through the pipeline."""

    started: datetime.datetime
    first_invocation: bool = True


# -- setting converters: raise TypeError/ValueError on bad input --
def _as_int(value) -> int:
    if isinstance(value, bool):
        raise TypeError(f"expected a number, got {value!r}")
    return int(value)


def _as_str(value) -> str:
    if not isinstance(value, (str, int, float)) or isinstance(value, bool) or str(value) == "":
        raise TypeError(f"expected a string, got {value!r}")
    return str(value)


def _as_str_list(value) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not value:
        raise TypeError(f"expected a non-empty list, got {value!r}")
    return [_as_str(v) for v in value]


def _as_int_list(value) -> list[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        value = [value]
    if not isinstance(value, list) or not value:
        raise TypeError(f"expected a non-empty list, got {value!r}")
    return [_as_int(v) for v in value]


def _as_hours(value) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"expected hours, got {value!r}")
    hours = float(value)
    if hours <= 0:
        raise ValueError(f"lookback must be positive, got {hours}")
    return hours


def _as_path(value) -> Path:
    if not isinstance(value, str) or not value:
        raise TypeError(f"expected a file name, got {value!r}")
    return Path(value).expanduser()


def _as_optional_path(value) -> Path | None:
    return None if value is None else _as_path(value)


def _setting(cfg: dict, section: str | None, key: str, convert: Callable):
    """Return convert(cfg[section][key]), or the converted default with a WARNING."""
    default = DEFAULT_CONFIG[section][key] if section else DEFAULT_CONFIG[key]
    name = f"{section}.{key}" if section else key
    try:
        value = cfg[section][key] if section else cfg[key]
        return convert(value)
    except (TypeError, ValueError, KeyError) as exc:
        _LOG.warning("Invalid setting %s (%s); using default %r", name, exc, default)
        return convert(default)


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(cfg_path: Path | None = None) -> ReportConfig:
    """Load YAML settings merged over DEFAULT_CONFIG.

    A missing or unreadable file is not fatal: defaults are used instead.
    """
    raw: dict = {}
    if cfg_path is not None:
        try:
            with cfg_path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            if isinstance(loaded, dict):
                raw = loaded
            elif loaded is not None:
                _LOG.warning("Config %s is not a mapping; using defaults", cfg_path)
        except (OSError, yaml.YAMLError) as exc:
            _LOG.warning("Could not read config %s (%s); using defaults", cfg_path, exc)
    return ReportConfig.from_dict(_merge(DEFAULT_CONFIG, raw))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def run_ps(command: str, *, timeout: int = 60) -> str:
    """Run a PowerShell command and return stdout ("" on failure)."""
    try:
        r = subprocess.run(
            ["powershell", "-NoProfile", "-Command", command],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
    except (OSError, subprocess.SubprocessError) as exc:
        _LOG.error("PowerShell call failed: %s", exc)
        return ""
    if r.returncode != 0 and r.stderr:
        _LOG.debug("PowerShell stderr: %s", r.stderr.strip())
    return (r.stdout or "").strip()


def ps_json(command: str, *, timeout: int = 60) -> list[dict]:
    """Run a PowerShell command that outputs JSON, return parsed list."""
    raw = run_ps(f"{command} | ConvertTo-Json -Compress", timeout=timeout)
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        _LOG.warning("Unparseable PowerShell JSON output (%d chars)", len(raw))
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    return []


def ps_quote(value: str) -> str:
    """Quote *value* as a PowerShell single-quoted literal."""
    return "'" + value.replace("'", "''") + "'"


def round_half_up(value: float, places: int = 2) -> float:
    """Round half away from zero (0.125 -> 0.13), unlike the builtin round()."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        with tmp.open("w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError:
        with suppress(OSError):
            tmp.unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Log rotation / logging
# ---------------------------------------------------------------------------
def rotated_log_name(base: Path, index: int) -> Path:
    """HealthReport.log -> HealthReport-<index>.log"""
    return base.with_name(f"{base.stem}-{index}{base.suffix}")


def rotate_logs(base: Path, max_files: int) -> None:
    """Shift base.log -> base-1.log -> ... -> base-<max_files>.log.

    The oldest file beyond *max_files* is discarded.
    """
    try:
        if max_files < 1:
            if base.exists():
                base.unlink()
            return
        oldest = rotated_log_name(base, max_files)
        if oldest.exists():
            oldest.unlink()
        for i in range(max_files - 1, 0, -1):
            src = rotated_log_name(base, i)
            if src.exists():
                src.replace(rotated_log_name(base, i + 1))
        if base.exists():
            base.replace(rotated_log_name(base, 1))
    except OSError as exc:
        _LOG.warning("Log rotation failed for %s: %s", base, exc)


def setup_logging(log_path: Path, verbose: bool = False) -> None:
    """Log to *log_path* and the console; console only if the file can't be opened."""
    console = logging.StreamHandler()
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    handlers: list[logging.Handler] = [console]
    file_error = None
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as exc:
        file_error = exc
    else:
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        handlers.insert(0, file_handler)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt=TIME_FMT,
        handlers=handlers,
        force=True,
    )
    if file_error is not None:
        _LOG.warning("Cannot open log file %s (%s); logging to console only", log_path, file_error)


# ============================================================
# 1. COLLECTOR
# ============================================================
@dataclass(frozen=True)
class EventRecord:
    id: int
    provider: str
    message: str
    severity: str
    timestamp: datetime.datetime
    channel: str = ""


@dataclass(frozen=True)
class LogicalVolume:
    device_id: str
    size: int | None
    free_space: int | None


@dataclass(frozen=True)
class PingSample:
    min_ms: float
    max_ms: float
    avg_ms: float
    success_percent: float


def lookback_start(config: ReportConfig, now: datetime.datetime) -> datetime.datetime:
    if config.lookback_hours is not None:
        return now - datetime.timedelta(hours=config.lookback_hours)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _parse_event(raw: dict, channel: str) -> EventRecord | None:
    try:
        event_id = int(raw["Id"])
        ms = int(raw["TimeCreatedMs"])
    except (KeyError, TypeError, ValueError):
        return None
    level = raw.get("Level")
    severity = LEVEL_NAMES.get(level) if isinstance(level, int) else None
    return EventRecord(
        id=event_id,
        provider=str(raw.get("ProviderName") or "Unknown"),
        message=str(raw.get("Message") or "").strip(),
        severity=severity or str(raw.get("LevelDisplayName") or "Unknown"),
        timestamp=datetime.datetime.fromtimestamp(ms / 1000),
        channel=channel,
    )


def collect_channel(
    channel: str, levels: Sequence[int], since: datetime.datetime
) -> list[EventRecord]:
    """Query one event-log channel; an unreadable channel yields []."""
    level_list = ",".join(str(lv) for lv in levels)
    command = (
        f"Get-WinEvent -FilterHashtable @{{LogName={ps_quote(channel)}; "
        f"Level={level_list}; StartTime=(Get-Date {ps_quote(since.strftime('%Y-%m-%dT%H:%M:%S'))})}} "
        "-ErrorAction SilentlyContinue | "
        "Select-Object Id, ProviderName, Level, LevelDisplayName, Message, "
        "@{n='TimeCreatedMs';e={([DateTimeOffset]$_.TimeCreated).ToUnixTimeMilliseconds()}}"
    )
    records: list[EventRecord] = []
    for raw in ps_json(command, timeout=180):
        rec = _parse_event(raw, channel)
        if rec is None:
            _LOG.debug("Skipping malformed event from %s: %r", channel, raw)
            continue
        records.append(rec)
    return records


def collect_events(config: ReportConfig, since: datetime.datetime) -> list[EventRecord]:
    events: list[EventRecord] = []
    for channel in config.channels:
        found = collect_channel(channel, config.levels, since)
        if found:
            _LOG.info("Channel %s: %d event(s) since %s", channel, len(found), since.strftime(TIME_FMT))
        else:
            _LOG.info("Channel %s: no events found (or channel unreadable)", channel)
        events.extend(found)
    return events


def collect_ping(target: str, count: int = 4) -> PingSample | None:
    replies = ps_json(
        f"Test-Connection -ComputerName {ps_quote(target)} -Count {count} "
        "-ErrorAction SilentlyContinue | Select-Object ResponseTime, StatusCode",
        timeout=30 + 5 * count,
    )
    latencies: list[float] = []
    for r in replies:
        # Win32_PingStatus: StatusCode 0 is a successful reply
        if r.get("StatusCode") != 0:
            continue
        value = r.get("ResponseTime")
        if isinstance(value, (int, float)):
            latencies.append(float(value))
    if not latencies:
        _LOG.error("Ping to %s failed: no replies", target)
        return None
    return PingSample(
        min_ms=min(latencies),
        max_ms=max(latencies),
        avg_ms=round_half_up(sum(latencies) / len(latencies)),
        success_percent=round_half_up(len(latencies) / count * 100),
    )


def collect_uptime(now: datetime.datetime | None = None) -> str:
    now = now or datetime.datetime.now()
    try:
        boot_time = datetime.datetime.fromtimestamp(psutil.boot_time())
    except (OSError, RuntimeError) as exc:
        _LOG.error("Could not read boot time: %s", exc)
        return UNKNOWN
    uptime = now - boot_time
    days = uptime.days
    hours, remainder = divmod(uptime.seconds, 3600)
    minutes, _ = divmod(remainder, 60)
    return f"{days}d {hours}h {minutes}m"


def collect_volumes() -> list[LogicalVolume]:
    rows = ps_json(
        "Get-CimInstance Win32_LogicalDisk -Filter 'DriveType=3' | "
        "Select-Object DeviceID, Size, FreeSpace"
    )
    volumes = []
    for d in rows:
        if not d.get("DeviceID"):
            continue
        volumes.append(
            LogicalVolume(
                device_id=str(d["DeviceID"]),
                size=d.get("Size"),
                free_space=d.get("FreeSpace"),
            )
        )
    return volumes


def _first_associated(instance_class: str, device_id: str, result_class: str, select: str) -> dict | None:
    found = ps_json(
        f"Get-CimInstance {instance_class} -Filter {ps_quote(f'DeviceID={ps_quote(device_id)}')} | "
        f"Get-CimAssociatedInstance -ResultClassName {result_class} | "
        f"Select-Object {select}"
    )
    return found[0] if found else None


def partition_of(volume: LogicalVolume) -> dict | None:
    """Logical disk -> backing Win32_DiskPartition, or None."""
    return _first_associated(
        "Win32_LogicalDisk", volume.device_id, "Win32_DiskPartition", "DeviceID, DiskIndex"
    )


def disk_of(partition: dict) -> dict | None:
    """Partition -> backing Win32_DiskDrive, or None."""
    device_id = partition.get("DeviceID")
    if not device_id:
        return None
    return _first_associated(
        "Win32_DiskPartition", str(device_id), "Win32_DiskDrive", "DeviceID, Model, SerialNumber, Status"
    )


# ============================================================
# 2. EVENT RECONCILER
# ============================================================
EventGroupKey: TypeAlias = tuple[int, str]


def snapshot_key(key: EventGroupKey) -> str:
    event_id, provider = key
    return f"{event_id}-{provider}"


def format_delta(delta: int) -> str:
    if delta > 0:
        return f"+{delta}"
    if delta < 0:
        return str(delta)
    return NO_CHANGE


@dataclass(frozen=True)
class EventSummary:
    key: EventGroupKey
    latest: EventRecord
    total_count: int
    unique_messages: int
    delta: int

    @property
    def delta_text(self) -> str:
        return format_delta(self.delta)


def reconcile(
    events: Iterable[EventRecord], previous: RunSnapshot
) -> tuple[list[EventSummary], RunSnapshot]:
    """Group events by (id, provider) and diff counts against *previous*.

    Returns the per-group summaries and the snapshot for the next run, which
    holds only the groups seen in this run.
    """
    groups: dict[EventGroupKey, list[EventRecord]] = {}
    for ev in events:
        groups.setdefault((ev.id, ev.provider), []).append(ev)

    summaries: list[EventSummary] = []
    current: RunSnapshot = {}
    for key, records in groups.items():
        latest = records[0]
        for rec in records[1:]:
            # >= so equal timestamps resolve to the later record
            if rec.timestamp >= latest.timestamp:
                latest = rec
        total = len(records)
        unique = 1 if total == 1 else len({r.message for r in records})
        skey = snapshot_key(key)
        summaries.append(
            EventSummary(
                key=key,
                latest=latest,
                total_count=total,
                unique_messages=unique,
                delta=total - previous.get(skey, 0),
            )
        )
        current[skey] = total
    return summaries, current


# ============================================================
# 3. DISK RESOLVER
# ============================================================
@dataclass(frozen=True)
class DiskInfo:
    volume_id: str
    status: str
    masked_serial: str
    total_size_gb: float
    used_space_gb: float
    free_space_gb: float
    free_percent: float


def mask_serial(serial: str | None) -> str:
    """Keep the last 4 characters, star out the rest ("N/A" if missing)."""
    serial = (serial or "").strip()
    if not serial:
        return NOT_AVAILABLE
    return "*" * max(0, len(serial) - 4) + serial[-4:]


def _lookup(hop: Callable, arg, what: str, volume_id: str) -> dict | None:
    try:
        return hop(arg)
    except (OSError, subprocess.SubprocessError, ValueError, KeyError) as exc:
        _LOG.error("%s lookup failed for %s: %s", what, volume_id, exc)
        return None


def resolve_disks(
    volumes: Iterable[LogicalVolume],
    partition_lookup: Callable[[LogicalVolume], dict | None] = partition_of,
    disk_lookup: Callable[[dict], dict | None] = disk_of,
) -> list[DiskInfo]:
    disks: list[DiskInfo] = []
    for vol in volumes:
        size, free = vol.size, vol.free_space
        if not isinstance(size, int) or not isinstance(free, int) or size <= 0:
            _LOG.warning("Skipping volume %s: invalid size/free space (%r/%r)", vol.device_id, size, free)
            continue

        partition = _lookup(partition_lookup, vol, "Partition", vol.device_id)
        if partition is None:
            _LOG.info("Skipping volume %s: no backing partition", vol.device_id)
            continue
        physical = _lookup(disk_lookup, partition, "Physical disk", vol.device_id)
        if physical is None:
            _LOG.info("Skipping volume %s: no backing physical disk", vol.device_id)
            continue

        disks.append(
            DiskInfo(
                volume_id=vol.device_id,
                status=str(physical.get("Status") or "OK"),
                masked_serial=mask_serial(physical.get("SerialNumber")),
                total_size_gb=round_half_up(size / GIB),
                used_space_gb=round_half_up((size - free) / GIB),
                free_space_gb=round_half_up(free / GIB),
                free_percent=round_half_up(free / size * 100),
            )
        )
    return disks


# ============================================================
# 4. REPORT RENDERER
# ============================================================
_CSS = """
body { font-family: Segoe UI, Arial, sans-serif; margin: 20px; color: #222; }
h1 { color: #1f3b5a; }
h2 { border-bottom: 1px solid #ccc; padding-bottom: 4px; }
table { border-collapse: collapse; width: 100%; margin-bottom: 20px; }
th, td { border: 1px solid #ddd; padding: 6px 8px; text-align: left; vertical-align: top; }
th { background: #1f3b5a; color: #fff; }
tr.error { background: #f8d7da; }
tr.warning { background: #fff3cd; }
.meta td:first-child { font-weight: bold; width: 220px; }
.placeholder { color: #777; font-style: italic; }
"""

_ROW_CLASS = {"Error": "error", "Warning": "warning"}


def _head(title: str) -> list[str]:
    return [
        "<!DOCTYPE html>",
        "<html>",
        "<head>",
        '<meta charset="utf-8">',
        f"<title>{html.escape(title)}</title>",
        f"<style>{_CSS}</style>",
        "</head>",
        "<body>",
    ]


def render_no_findings(generated: datetime.datetime) -> str:
    lines = _head("Health Report")
    w = lines.append
    w(f"<h1>No errors or warnings found - {generated.strftime(TIME_FMT)}</h1>")
    w("</body>")
    w("</html>")
    return "\n".join(lines)


def render_report(
    system: str,
    uptime: str,
    ping: PingSample | None,
    summaries: Sequence[EventSummary],
    disks: Sequence[DiskInfo],
    last_run: str,
    generated: datetime.datetime,
) -> str:
    esc = html.escape
    lines = _head(f"Health Report - {system}")
    w = lines.append

    # --- Header ---
    errors = sum(1 for s in summaries if s.latest.severity == "Error")
    warnings = sum(1 for s in summaries if s.latest.severity == "Warning")
    total_events = sum(s.total_count for s in summaries)

    w(f"<h1>Health Report - {esc(system)}</h1>")
    w('<table class="meta">')
    w(f"<tr><td>Generated</td><td>{generated.strftime(TIME_FMT)}</td></tr>")
    w(f"<tr><td>Uptime</td><td>{esc(uptime)}</td></tr>")
    w(f"<tr><td>Last report</td><td>{esc(last_run)}</td></tr>")
    w(
        f"<tr><td>Event groups</td><td>{len(summaries)} "
        f"({errors} error, {warnings} warning; {total_events} events)</td></tr>"
    )
    w("</table>")

    # --- Ping ---
    w("<h2>Network Latency</h2>")
    if ping:
        w("<table>")
        w("<tr><th>Min (ms)</th><th>Max (ms)</th><th>Avg (ms)</th><th>Success</th></tr>")
        w(
            f"<tr><td>{ping.min_ms:.2f}</td><td>{ping.max_ms:.2f}</td>"
            f"<td>{ping.avg_ms:.2f}</td><td>{ping.success_percent:.2f}%</td></tr>"
        )
        w("</table>")
    else:
        w('<p class="placeholder">No ping results available.</p>')

    # --- Events ---
    w("<h2>Events</h2>")
    w("<table>")
    w(
        "<tr><th>Time</th><th>Level</th><th>Event ID</th><th>Provider</th>"
        "<th>Count</th><th>Unique Messages</th><th>Change</th><th>Message</th></tr>"
    )
    for s in sorted(summaries, key=lambda x: x.latest.timestamp, reverse=True):
        rec = s.latest
        cls = _ROW_CLASS.get(rec.severity)
        row_open = f'<tr class="{cls}">' if cls else "<tr>"
        w(
            f"{row_open}<td>{rec.timestamp.strftime(TIME_FMT)}</td>"
            f"<td>{esc(rec.severity)}</td><td>{rec.id}</td><td>{esc(rec.provider)}</td>"
            f"<td>{s.total_count}</td><td>{s.unique_messages}</td>"
            f"<td>{esc(s.delta_text)}</td><td>{esc(rec.message)}</td></tr>"
        )
    w("</table>")

    # --- System health ---
    w("<h2>System Health</h2>")
    if disks:
        w("<table>")
        w(
            "<tr><th>Volume</th><th>Status</th><th>Serial</th><th>Total (GB)</th>"
            "<th>Used (GB)</th><th>Free (GB)</th><th>Free %</th></tr>"
        )
        for d in disks:
            w(
                f"<tr><td>{esc(d.volume_id)}</td><td>{esc(d.status)}</td>"
                f"<td>{esc(d.masked_serial)}</td><td>{d.total_size_gb:.2f}</td>"
                f"<td>{d.used_space_gb:.2f}</td><td>{d.free_space_gb:.2f}</td>"
                f"<td>{d.free_percent:.2f}%</td></tr>"
            )
        w("</table>")
    else:
        w('<p class="placeholder">No system information available.</p>')

    w("</body>")
    w("</html>")
    return "\n".join(lines)


# ============================================================
# 5. RUN-STATE STORE
# ============================================================
class RunStateStore:
    """Persists the event snapshot and last-run timestamp between runs."""

    def __init__(self, snapshot_path: Path, last_run_path: Path) -> None:
        self.snapshot_path = snapshot_path
        self.last_run_path = last_run_path

    def load(self) -> RunSnapshot:
        if not self.snapshot_path.exists():
            return {}
        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            _LOG.warning("Snapshot %s unreadable (%s); starting fresh", self.snapshot_path, exc)
            return {}
        if not isinstance(data, dict):
            _LOG.warning("Snapshot %s is not a mapping; starting fresh", self.snapshot_path)
            return {}
        snapshot: RunSnapshot = {}
        for key, value in data.items():
            if not isinstance(value, int) or isinstance(value, bool):
                _LOG.warning("Snapshot %s has invalid count for %r; starting fresh", self.snapshot_path, key)
                return {}
            snapshot[str(key)] = value
        return snapshot

    def save(self, snapshot: RunSnapshot) -> None:
        _atomic_write_text(self.snapshot_path, json.dumps(snapshot, indent=2, sort_keys=True))

    def load_last_run(self) -> datetime.datetime | None:
        if not self.last_run_path.exists():
            return None
        try:
            text = self.last_run_path.read_text(encoding="utf-8").strip()
            when = datetime.datetime.fromisoformat(text)
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            _LOG.warning("Last-run file %s unreadable (%s)", self.last_run_path, exc)
            return None
        if when.tzinfo is not None:
            # compared against naive local time
            when = when.astimezone().replace(tzinfo=None)
        return when

    def save_last_run(self, when: datetime.datetime) -> None:
        _atomic_write_text(self.last_run_path, when.isoformat(timespec="seconds"))


def describe_last_run(last: datetime.datetime | None, now: datetime.datetime) -> str:
    if last is None:
        return UNKNOWN
    minutes = int((now - last).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minutes ago"
    hours, minutes = divmod(minutes, 60)
    return f"{hours} hours and {minutes} minutes ago"


# ============================================================
# Main
# ============================================================
def run(config: ReportConfig, context: RunContext) -> Path:
    """Collect, reconcile, render and persist one report. Returns its path."""
    now = context.started
    since = lookback_start(config, now)
    events = collect_events(config, since)

    if not events:
        _LOG.info("No qualifying events since %s; writing empty report", since.strftime(TIME_FMT))
        _atomic_write_text(config.report_path, render_no_findings(now))
        return config.report_path

    store = RunStateStore(config.snapshot_path, config.last_run_path)
    last_run = describe_last_run(store.load_last_run(), now)

    ping = collect_ping(config.ping_target, config.ping_count) if config.ping_enabled else None
    uptime = collect_uptime(now)
    disks = resolve_disks(collect_volumes())

    summaries, snapshot = reconcile(events, store.load())
    _LOG.info("%d event(s) in %d group(s)", len(events), len(summaries))

    document = render_report(HOSTNAME, uptime, ping, summaries, disks, last_run, now)
    _atomic_write_text(config.report_path, document)

    try:
        store.save(snapshot)
        store.save_last_run(datetime.datetime.now())
    except OSError as exc:
        _LOG.error("Could not persist run state: %s", exc)
    return config.report_path


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a Windows event/disk health HTML report.")
    parser.add_argument("-c", "--config", type=Path, help="YAML settings file")
    parser.add_argument("-o", "--output-dir", type=Path, help="Directory for the report and state files")
    parser.add_argument("--no-ping", action="store_true", help="Skip the network latency test")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose console and log output")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    cfg_path = args.config
    if cfg_path is None and (SCRIPT_DIR / "HealthReport.yaml").exists():
        cfg_path = SCRIPT_DIR / "HealthReport.yaml"
    config = load_config(cfg_path)
    if args.output_dir:
        out = args.output_dir.expanduser()
        for attr in ("report_path", "snapshot_path", "last_run_path", "log_path"):
            setattr(config, attr, out / getattr(config, attr).name)
    config.ping_enabled = not args.no_ping
    config.verbose = config.verbose or args.verbose

    context = RunContext(started=datetime.datetime.now(), first_invocation=True)
    if context.first_invocation:
        rotate_logs(config.log_path, config.max_log_files)
    setup_logging(config.log_path, config.verbose)

    print("Generating Windows health report...")
    _LOG.info("Run started on %s", HOSTNAME)
    try:
        report = run(config, context)
    except OSError as exc:
        _LOG.error("Could not write report %s: %s", config.report_path, exc)
        print(f"  [FAIL] {config.report_path} ({exc})")
    else:
        print(f"  [OK] {report}")
    print(f"  [OK] {config.log_path}")
    _LOG.info("Run finished")
    return 0


if __name__ == "__main__":
    sys.exit(main())

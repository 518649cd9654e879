"""
FleetSync - Transfer Engine Interface
Command construction for the external transfer engine and parsing of the
rate and progress annotations it writes to its output and log files.
"""

import os
import re
import shutil
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import psutil


# Decimal steps, matching how the engine reports its own rates
RATE_UNITS = {
    "B": 1,
    "KB": 1000,
    "KIB": 1000,
    "MB": 1000 ** 2,
    "MIB": 1000 ** 2,
    "GB": 1000 ** 3,
    "GIB": 1000 ** 3,
}

_RATE_PATTERN = re.compile(r'(\d+(?:\.\d+)?)\s*(B|[KMG]i?B)/s', re.IGNORECASE)
_PROGRESS_PATTERN = re.compile(r'(\d{1,3}(?:\.\d+)?)%')

DEFAULT_PARALLELISM = 16
MAX_PARALLELISM = 32


def default_parallelism() -> int:
    """min(32, cores * 8), or 16 when the core count is unavailable"""
    try:
        cores = psutil.cpu_count()
    except Exception:
        cores = None
    if not cores:
        return DEFAULT_PARALLELISM
    return min(MAX_PARALLELISM, cores * 8)


def rate_to_mbps(value: float, unit: str) -> float:
    """Convert a rate of ``value`` ``unit``/s to megabits per second"""
    multiplier = RATE_UNITS.get(unit.upper())
    if multiplier is None:
        raise ValueError(f"Unknown rate unit: {unit}")
    return value * multiplier * 8 / 1e6


def parse_rate(line: str) -> Optional[float]:
    """Return the last rate annotation in ``line`` in Mbps, or None"""
    matches = _RATE_PATTERN.findall(line or "")
    if not matches:
        return None
    value, unit = matches[-1]
    try:
        return rate_to_mbps(float(value), unit)
    except ValueError:
        return None


def parse_progress(line: str) -> Optional[float]:
    """Return the last percentage annotation in ``line``, or None"""
    for match in reversed(_PROGRESS_PATTERN.findall(line or "")):
        try:
            percent = float(match)
        except ValueError:
            continue
        if 0.0 <= percent <= 100.0:
            return percent
    return None


def last_rate(lines: Iterable[str]) -> Optional[float]:
    """Most recent rate found in a sequence of output lines"""
    rate = None
    for line in lines:
        parsed = parse_rate(line)
        if parsed is not None:
            rate = parsed
    return rate


def last_progress(lines: Iterable[str]) -> Optional[float]:
    """Most recent progress percentage found in a sequence of log lines"""
    progress = None
    for line in lines:
        parsed = parse_progress(line)
        if parsed is not None:
            progress = parsed
    return progress


def format_bwlimit(cap_kbs: float) -> str:
    """Render a KB/s cap the way the engine's --bwlimit flag accepts it"""
    text = f"{cap_kbs:.2f}".rstrip('0').rstrip('.')
    return f"{text}K"


@dataclass
class EngineOptions:
    """Tuning for bulk copy invocations"""
    transfers: int = field(default_factory=default_parallelism)
    buffer_size: str = "64M"
    chunk_size: str = "64M"
    multi_thread_streams: int = 8
    multi_thread_cutoff: str = "64M"
    stats_interval: str = "30s"
    log_level: str = "INFO"
    size_only: bool = True
    progress: bool = True

    @property
    def checkers(self) -> int:
        return self.transfers * 2


class TransferEngine:
    """Builds invocations of the transfer engine binary"""

    def __init__(self, engine_path: str, config_path: str, options: EngineOptions = None):
        self.engine_path = engine_path
        self.config_path = config_path
        self.options = options or EngineOptions()

    @property
    def binary_name(self) -> str:
        name = re.split(r'[\\/]', self.engine_path)[-1]
        root, ext = os.path.splitext(name)
        return root if ext.lower() == ".exe" else name

    def resolve_binary(self) -> Optional[str]:
        """Absolute path of the engine binary, or None if it cannot be found"""
        if os.path.isfile(self.engine_path):
            return self.engine_path
        return shutil.which(self.engine_path)

    def _base_command(self) -> List[str]:
        return [self.engine_path, "--config", self.config_path]

    def list_command(self, remote_token: str) -> List[str]:
        """Read-only listing of a bare remote, used for reachability"""
        return self._base_command() + ["lsd", remote_token]

    def purge_command(self, remote_path: str) -> List[str]:
        return self._base_command() + ["purge", remote_path]

    def measurement_command(self, payload_path: str, remote_path: str, log_path: str) -> List[str]:
        """Single copy of the measurement payload with rate stats enabled"""
        return self._base_command() + [
            "copy", payload_path, remote_path,
            "--stats", "1s",
            "--stats-one-line",
            "-v",
            "--log-file", log_path,
        ]

    def copy_command(self, source: str, destination: str, log_path: str,
                     bandwidth_cap_kbs: Optional[float] = None,
                     exclude: Optional[str] = None) -> List[str]:
        """Build a bulk copy invocation"""
        opts = self.options
        cmd = self._base_command() + ["copy", source, destination]

        if opts.progress:
            cmd.append("--progress")

        # Size-only comparison, no content hashing
        if opts.size_only:
            cmd.append("--size-only")

        cmd.extend(["--transfers", str(opts.transfers)])
        cmd.extend(["--checkers", str(opts.checkers)])
        cmd.extend(["--buffer-size", opts.buffer_size])
        cmd.extend(["--drive-chunk-size", opts.chunk_size])
        cmd.extend(["--multi-thread-streams", str(opts.multi_thread_streams)])
        cmd.extend(["--multi-thread-cutoff", opts.multi_thread_cutoff])

        cmd.extend(["--log-file", log_path])
        cmd.extend(["--log-level", opts.log_level])
        cmd.extend(["--stats", opts.stats_interval])
        cmd.append("--stats-one-line")

        if bandwidth_cap_kbs:
            cmd.extend(["--bwlimit", format_bwlimit(bandwidth_cap_kbs)])

        if exclude:
            cmd.extend(["--exclude", exclude])

        return cmd

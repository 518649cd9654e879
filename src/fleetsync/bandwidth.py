"""
FleetSync - Bandwidth Estimation
One-shot upload measurement and the time-of-day policy derived from it.
"""

import os
import uuid
import logging
import tempfile
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .config import BandwidthSettings
from .engine import TransferEngine, last_rate

logger = logging.getLogger(__name__)

PAYLOAD_SIZE = 1024 * 1024
SCRATCH_DIR = "fleetsync-bandwidth-test"


class Bucket(Enum):
    """Time-of-day bandwidth bucket"""
    DAY = "day"
    NIGHT = "night"


@dataclass
class BandwidthPolicy:
    """Per-job rate cap as a function of the measured upload and local hour"""
    measured_upload_mbps: float
    day_fraction: float = 0.5
    night_fraction: float = 0.75
    day_start_hour: int = 6
    day_end_hour: int = 18

    @classmethod
    def from_settings(cls, measured_upload_mbps: float, settings: BandwidthSettings) -> 'BandwidthPolicy':
        return cls(
            measured_upload_mbps=measured_upload_mbps,
            day_fraction=settings.day_fraction,
            night_fraction=settings.night_fraction,
            day_start_hour=settings.day_start_hour,
            day_end_hour=settings.day_end_hour
        )

    def bucket(self, hour: int) -> Bucket:
        """Day inside [day_start_hour, day_end_hour), night otherwise"""
        if self.day_start_hour <= hour < self.day_end_hour:
            return Bucket.DAY
        return Bucket.NIGHT

    def fraction(self, hour: int) -> float:
        return self.day_fraction if self.bucket(hour) == Bucket.DAY else self.night_fraction

    def cap_kbs(self, hour: int, job_count: int) -> float:
        """Per-job cap in KB/s: Mbps * fraction * 1000 / 8 / job_count"""
        if job_count < 1:
            raise ValueError("job_count must be >= 1")
        return self.measured_upload_mbps * self.fraction(hour) * 1000 / 8 / job_count


class BandwidthEstimator:
    """Measures upload throughput with a single real transfer"""

    def __init__(self, engine: TransferEngine,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 scratch_root: Optional[str] = None):
        self.engine = engine
        self._run = runner
        self.scratch_root = scratch_root

    def _write_payload(self, directory: str) -> str:
        payload_path = os.path.join(directory, f"payload_{uuid.uuid4().hex[:8]}.bin")
        with open(payload_path, 'wb') as f:
            f.write(os.urandom(PAYLOAD_SIZE))
        return payload_path

    def _read_lines(self, path: str) -> List[str]:
        try:
            with open(path, 'r', encoding='utf-8', errors='replace') as f:
                return f.read().splitlines()
        except OSError:
            return []

    def _cleanup_remote(self, remote_path: str):
        try:
            result = self._run(
                self.engine.purge_command(remote_path),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=120
            )
            if result.returncode != 0:
                logger.debug(f"Purge of {remote_path} exited with code {result.returncode}")
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Purge of {remote_path} failed: {e}")

    def estimate(self, remote_token: str) -> Optional[float]:
        """
        Upload a 1 MiB payload under ``remote_token`` and return the rate in Mbps.

        Returns None on any failure. The local payload and transfer log are
        removed in every case.
        """
        remote_path = f"{remote_token}{SCRATCH_DIR}/{uuid.uuid4().hex[:12]}"

        try:
            with tempfile.TemporaryDirectory(prefix="fleetsync-", dir=self.scratch_root) as scratch:
                payload_path = self._write_payload(scratch)
                log_path = os.path.join(scratch, "measurement.log")
                cmd = self.engine.measurement_command(payload_path, remote_path, log_path)

                logger.info(f"Measuring upload bandwidth against {remote_token}")
                result = self._run(cmd, capture_output=True, text=True)

                lines = self._read_lines(log_path)
                lines.extend((result.stdout or "").splitlines())
                lines.extend((result.stderr or "").splitlines())

                self._cleanup_remote(remote_path)

                if result.returncode != 0:
                    logger.warning(
                        f"Bandwidth measurement to {remote_token} exited with code {result.returncode}"
                    )
                    return None

                mbps = last_rate(lines)
                if not mbps:
                    logger.warning(f"Bandwidth measurement to {remote_token} reported no transfer rate")
                    return None

                logger.info(f"Measured upload bandwidth: {mbps:.2f} Mbps")
                return mbps

        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Bandwidth measurement to {remote_token} failed: {e}")
            return None

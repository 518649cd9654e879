"""
FleetSync - Job Launcher
Builds per-job engine invocations and starts one subprocess per valid job.
"""

import os
import time
import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from . import LAUNCH_STAGGER_SECONDS
from .destinations import ValidatedJob
from .engine import TransferEngine
from .logs import RunLogs

logger = logging.getLogger(__name__)


class SubprocessSpawner:
    """Starts engine processes; each engine writes its own --log-file"""

    def spawn(self, cmd: List[str], log_path: str) -> subprocess.Popen:
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL
        )


@dataclass
class RunningJob:
    """A launched engine process and what the supervisor knows about it"""
    index: int
    validated_job: ValidatedJob
    process: subprocess.Popen
    start_time: float
    bandwidth_cap_kbs: float
    log_path: str
    exit_code: Optional[int] = None
    end_time: Optional[float] = None
    exit_reported: bool = False
    stall_warned: bool = False
    log_offset: int = 0
    log_lines: int = 0

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def poll(self) -> Optional[int]:
        """Refresh and return the exit code, None while running"""
        if self.exit_code is None:
            self.exit_code = self.process.poll()
        return self.exit_code

    @property
    def is_alive(self) -> bool:
        return self.poll() is None


class JobLauncher:
    """Starts the fleet with a given per-job bandwidth cap"""

    def __init__(self, engine: TransferEngine, run_logs: RunLogs, spawner=None,
                 stagger_seconds: float = LAUNCH_STAGGER_SECONDS,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.engine = engine
        self.run_logs = run_logs
        self.spawner = spawner or SubprocessSpawner()
        self.stagger_seconds = stagger_seconds
        self._sleep = sleep
        self._clock = clock

    def build_command(self, index: int, validated_job: ValidatedJob, bandwidth_cap_kbs: float) -> List[str]:
        return self.engine.copy_command(
            source=validated_job.source,
            destination=validated_job.destination,
            log_path=self.run_logs.engine_log_path(index),
            bandwidth_cap_kbs=bandwidth_cap_kbs,
            exclude=validated_job.exclude
        )

    def launch_job(self, index: int, validated_job: ValidatedJob,
                   bandwidth_cap_kbs: float) -> Optional[RunningJob]:
        """Start one job; None if its source is gone or the spawn fails"""
        if not os.path.exists(validated_job.source):
            logger.warning(f"Job {index}: source {validated_job.source} no longer exists, skipping")
            return None

        cmd = self.build_command(index, validated_job, bandwidth_cap_kbs)
        log_path = self.run_logs.engine_log_path(index)

        try:
            process = self.spawner.spawn(cmd, log_path)
        except OSError as e:
            logger.error(f"Job {index}: failed to start {validated_job.source} -> {validated_job.destination}: {e}")
            return None

        logger.info(
            f"Job {index}: started {validated_job.source} -> {validated_job.destination} "
            f"(pid {getattr(process, 'pid', '?')}, cap {bandwidth_cap_kbs:.2f} KB/s)"
        )
        return RunningJob(
            index=index,
            validated_job=validated_job,
            process=process,
            start_time=self._clock(),
            bandwidth_cap_kbs=bandwidth_cap_kbs,
            log_path=log_path
        )

    def launch(self, valid_jobs: List[ValidatedJob], bandwidth_cap_kbs: float) -> Dict[int, RunningJob]:
        """
        Start every valid job, staggering the starts.

        Job ``i`` of ``valid_jobs`` always gets index ``i`` (1-based), so
        indices stay the same when the same list is launched again.
        """
        return self.launch_indexed(dict(enumerate(valid_jobs, start=1)), bandwidth_cap_kbs)

    def launch_indexed(self, jobs: Dict[int, ValidatedJob], bandwidth_cap_kbs: float) -> Dict[int, RunningJob]:
        """Start the given jobs under their existing indices, in index order"""
        running: Dict[int, RunningJob] = {}

        for index in sorted(jobs):
            if running:
                self._sleep(self.stagger_seconds)

            job = self.launch_job(index, jobs[index], bandwidth_cap_kbs)
            if job is not None:
                running[index] = job

        logger.info(f"Launched {len(running)} of {len(jobs)} jobs")
        return running

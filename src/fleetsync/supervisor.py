"""
FleetSync - Supervisor Loop
Polls the running fleet at a fixed cadence, emits heartbeats and stall
warnings, and restarts every still-running job with a new bandwidth cap
when the day/night bucket changes.
"""

import os
import time
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import psutil

from . import POLL_INTERVAL_SECONDS, STALL_THRESHOLD_SECONDS
from .bandwidth import BandwidthPolicy, Bucket
from .destinations import ValidatedJob
from .engine import parse_progress
from .launcher import JobLauncher, RunningJob

logger = logging.getLogger(__name__)

LOG_TAIL_BYTES = 64 * 1024
KILL_WAIT_SECONDS = 30


class SupervisorPhase(Enum):
    """Supervisor state machine phases"""
    RUNNING = "running"
    RELAUNCHING = "relaunching"
    DRAINED = "drained"


@dataclass
class SupervisorState:
    """All mutable run state, passed through the loop"""
    jobs: Dict[int, RunningJob]
    bucket: Bucket
    cap_kbs: float
    phase: SupervisorPhase = SupervisorPhase.RUNNING
    relaunch_count: int = 0
    ticks: int = 0
    started_at: float = field(default_factory=time.time)
    # index -> exit code of a job that ended on its own; never relaunched
    finished: Dict[int, int] = field(default_factory=dict)

    def alive_jobs(self) -> List[RunningJob]:
        return [job for _, job in sorted(self.jobs.items()) if job.is_alive]

    @property
    def has_alive(self) -> bool:
        return bool(self.alive_jobs())


@dataclass
class Heartbeat:
    """One telemetry sample for a running job"""
    index: int
    elapsed_seconds: float
    cpu_seconds: Optional[float] = None
    rss_bytes: Optional[int] = None
    log_lines: Optional[int] = None
    log_last_write: Optional[float] = None
    progress: Optional[float] = None

    @property
    def progress_text(self) -> str:
        return f"{self.progress:.0f}%" if self.progress is not None else "unknown"

    def format(self) -> str:
        cpu = f"{self.cpu_seconds:.1f}s" if self.cpu_seconds is not None else "unknown"
        rss = f"{self.rss_bytes / 1024 / 1024:.1f}MB" if self.rss_bytes is not None else "unknown"
        lines = str(self.log_lines) if self.log_lines is not None else "unknown"
        if self.log_last_write is not None:
            last_write = datetime.fromtimestamp(self.log_last_write).strftime("%H:%M:%S")
        else:
            last_write = "unknown"
        return (
            f"Job {self.index}: running {format_duration(self.elapsed_seconds)}, cpu {cpu}, "
            f"rss {rss}, log {lines} lines (last write {last_write}), progress {self.progress_text}"
        )


def format_duration(seconds: float) -> str:
    seconds = int(max(0, seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:d}:{minutes:02d}:{secs:02d}"


@dataclass
class LogStats:
    """What a heartbeat knows about an engine log"""
    lines: int
    last_write: float
    progress: Optional[float]
    offset: int


def read_log_stats(path: str, offset: int = 0, lines: int = 0) -> Optional[LogStats]:
    """
    Line count, last-write time and last progress percentage of a log.

    Only bytes past ``offset`` are counted and added to ``lines``, so each
    poll reads what was appended since the previous one. A log shorter than
    ``offset`` has been replaced and is counted from the start. Returns None
    for a missing log; the percentage is None when no progress annotation
    has been written yet.
    """
    if not os.path.exists(path):
        return None

    mtime = os.path.getmtime(path)
    with open(path, 'rb') as f:
        size = f.seek(0, os.SEEK_END)
        if size < offset:
            offset, lines = 0, 0

        f.seek(offset)
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            lines += chunk.count(b"\n")
        offset = f.tell()

        f.seek(max(0, offset - LOG_TAIL_BYTES))
        tail = f.read().decode('utf-8', errors='replace')

    progress = None
    for line in reversed(tail.splitlines()):
        progress = parse_progress(line)
        if progress is not None:
            break

    return LogStats(lines=lines, last_write=mtime, progress=progress, offset=offset)


def process_usage(pid: Optional[int]) -> Tuple[Optional[float], Optional[int]]:
    """CPU seconds and resident memory of a process, None where unavailable"""
    if pid is None:
        return None, None
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            cpu = proc.cpu_times()
            memory = proc.memory_info()
        return cpu.user + cpu.system, memory.rss
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None, None


class Supervisor:
    """Runs the fleet until every process has exited"""

    def __init__(self, policy: BandwidthPolicy, launcher: JobLauncher,
                 valid_jobs: List[ValidatedJob],
                 poll_interval: float = POLL_INTERVAL_SECONDS,
                 stall_threshold: float = STALL_THRESHOLD_SECONDS,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], None] = time.sleep,
                 usage_sampler: Callable[[Optional[int]], Tuple[Optional[float], Optional[int]]] = process_usage):
        self.policy = policy
        self.launcher = launcher
        self.valid_jobs = list(valid_jobs)
        self.poll_interval = poll_interval
        self.stall_threshold = stall_threshold
        self._clock = clock
        self._sleep = sleep
        self._sample_usage = usage_sampler

    def _cap_for(self, hour: int) -> float:
        return self.policy.cap_kbs(hour, len(self.valid_jobs))

    def start(self) -> SupervisorState:
        """Compute the initial cap and launch the fleet"""
        now = self._clock()
        bucket = self.policy.bucket(now.hour)
        cap = self._cap_for(now.hour)

        logger.info(
            f"Starting {len(self.valid_jobs)} jobs in {bucket.value} bucket with "
            f"{cap:.2f} KB/s per job ({self.policy.measured_upload_mbps:.2f} Mbps measured)"
        )
        jobs = self.launcher.launch(self.valid_jobs, cap)
        return SupervisorState(jobs=jobs, bucket=bucket, cap_kbs=cap, started_at=now.timestamp())

    def run(self, state: Optional[SupervisorState] = None) -> SupervisorState:
        """Poll until no tracked process is alive"""
        state = state or self.start()

        while state.has_alive:
            self._sleep(self.poll_interval)
            self.tick(state)

        # Report exits that happened after the last heartbeat pass
        self.emit_heartbeats(state)
        state.phase = SupervisorPhase.DRAINED
        logger.info(f"All jobs finished after {state.relaunch_count} relaunches")
        return state

    def tick(self, state: SupervisorState):
        """One polling pass: bucket check, heartbeats, stall detection"""
        state.ticks += 1
        self.check_bucket(state)
        self.emit_heartbeats(state)

    def check_bucket(self, state: SupervisorState) -> bool:
        """Relaunch the fleet if the bucket changed and the cap with it"""
        hour = self._clock().hour
        bucket = self.policy.bucket(hour)
        if bucket == state.bucket:
            return False

        new_cap = self._cap_for(hour)
        logger.info(f"Bandwidth bucket changed from {state.bucket.value} to {bucket.value}")
        state.bucket = bucket

        if new_cap == state.cap_kbs:
            return False

        self.relaunch(state, new_cap)
        return True

    def terminate_all(self, jobs: List[RunningJob]):
        """Hard-stop each process and wait for it to exit"""
        for job in jobs:
            logger.info(f"Job {job.index}: stopping pid {job.pid} for relaunch")
            try:
                job.process.kill()
            except OSError as e:
                logger.warning(f"Job {job.index}: kill of pid {job.pid} failed: {e}")

            try:
                job.process.wait(timeout=KILL_WAIT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning(
                    f"Job {job.index}: pid {job.pid} still alive {KILL_WAIT_SECONDS}s after kill, waiting"
                )
                job.process.wait()

    def relaunch(self, state: SupervisorState, new_cap: float):
        """
        Stop every still-running process, then start those jobs again with
        ``new_cap`` under the same indices.

        Jobs that already exited keep their record and exit code. A stopped
        job that cannot be started again keeps its killed record, so it is
        reported as failed.
        """
        state.phase = SupervisorPhase.RELAUNCHING
        stopped = state.alive_jobs()
        logger.info(
            f"Relaunching {len(stopped)} running jobs: cap {state.cap_kbs:.2f} -> {new_cap:.2f} KB/s per job"
        )

        self.terminate_all(stopped)
        restarted = self.launcher.launch_indexed(
            {job.index: job.validated_job for job in stopped}, new_cap
        )
        for job in stopped:
            replacement = restarted.get(job.index)
            if replacement is None:
                logger.warning(f"Job {job.index}: could not be restarted after the cap change")
                continue
            # same engine log, appended to
            replacement.log_offset = job.log_offset
            replacement.log_lines = job.log_lines
            state.jobs[job.index] = replacement

        state.cap_kbs = new_cap
        state.relaunch_count += 1
        state.phase = SupervisorPhase.RUNNING

    def emit_heartbeats(self, state: SupervisorState):
        for index in sorted(state.jobs):
            job = state.jobs[index]
            try:
                self._observe(state, job)
            except Exception as e:
                logger.warning(f"Job {index}: heartbeat failed: {e}")

    def _observe(self, state: SupervisorState, job: RunningJob):
        exit_code = job.poll()

        if exit_code is not None:
            if not job.exit_reported:
                job.exit_reported = True
                job.end_time = self._clock().timestamp()
                state.finished[job.index] = exit_code
                if exit_code == 0:
                    logger.info(f"Job {job.index}: finished successfully")
                else:
                    logger.warning(f"Job {job.index}: exited with code {exit_code}, see {job.log_path}")
            return

        heartbeat = self.sample(job)
        logger.info(heartbeat.format())
        self.check_stall(job, heartbeat)

    def sample(self, job: RunningJob) -> Heartbeat:
        now = self._clock().timestamp()
        heartbeat = Heartbeat(index=job.index, elapsed_seconds=now - job.start_time)

        heartbeat.cpu_seconds, heartbeat.rss_bytes = self._sample_usage(job.pid)

        try:
            stats = read_log_stats(job.log_path, job.log_offset, job.log_lines)
        except OSError as e:
            logger.warning(f"Job {job.index}: could not read log {job.log_path}: {e}")
            return heartbeat

        if stats is not None:
            job.log_offset, job.log_lines = stats.offset, stats.lines
            heartbeat.log_lines = stats.lines
            heartbeat.log_last_write = stats.last_write
            heartbeat.progress = stats.progress

        return heartbeat

    def check_stall(self, job: RunningJob, heartbeat: Heartbeat) -> bool:
        """Warn once per stall episode; never stops the process"""
        now = self._clock().timestamp()
        last_activity = heartbeat.log_last_write if heartbeat.log_last_write is not None else job.start_time
        idle = now - last_activity

        if idle <= self.stall_threshold:
            job.stall_warned = False
            return False

        if not job.stall_warned:
            job.stall_warned = True
            logger.warning(
                f"Job {job.index}: log {job.log_path} not written for {idle / 60:.1f} minutes "
                f"while pid {job.pid} is alive; check network and engine health"
            )
        return True

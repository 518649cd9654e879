"""
FleetSync - Run Orchestration
Wires the stages of a run together in order: configuration, logging,
preconditions, destination probing, bandwidth measurement, launch,
supervision and the final report.
"""

import time
import logging
import subprocess
from datetime import datetime
from typing import Callable, Optional

from rich.console import Console

from . import FALLBACK_UPLOAD_MBPS
from .bandwidth import BandwidthEstimator, BandwidthPolicy
from .config import FleetConfig, load_config
from .destinations import DestinationProber
from .engine import TransferEngine
from .environment import PreconditionValidator
from .errors import PreconditionError
from .launcher import JobLauncher
from .logs import DEFAULT_RETENTION_DAYS, RunLogs, purge_old_logs, setup_logging
from .notify import Notifier
from .report import build_report, finish_run
from .supervisor import Supervisor

logger = logging.getLogger(__name__)


class FleetRunner:
    """Executes one complete run and returns its exit status"""

    def __init__(self, config_path: Optional[str] = None, target_host: Optional[str] = None,
                 silent: bool = False, log_retention_days: int = DEFAULT_RETENTION_DAYS,
                 verbose: bool = False, console: Optional[Console] = None,
                 notifier: Optional[Notifier] = None,
                 process_runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 spawner=None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = datetime.now):
        self.config_path = config_path
        self.target_host = target_host
        self.log_retention_days = log_retention_days
        self.verbose = verbose
        self.console = console
        self.notifier = notifier or Notifier(silent=silent)
        self._process_runner = process_runner
        self._spawner = spawner
        self._sleep = sleep
        self._clock = clock

    def abort(self, error: PreconditionError) -> int:
        """Fatal path: one notification, then exit status 1"""
        logger.error(f"Run aborted: {error}")
        self.notifier.notify("FleetSync aborted", str(error))
        return 1

    def run(self) -> int:
        setup_logging(verbose=self.verbose, console=self.console)
        try:
            config = load_config(self.config_path)
            run_logs = self._prepare_logs(config)
            return self._execute(config, run_logs)
        except PreconditionError as e:
            return self.abort(e)

    def _prepare_logs(self, config: FleetConfig) -> RunLogs:
        run_logs = RunLogs(config.log_directory, run_stamp=self._clock().strftime("%Y%m%d_%H%M%S"))
        try:
            run_logs.ensure_directory()
            setup_logging(run_logs.transcript_path, verbose=self.verbose, console=self.console)
        except OSError as e:
            raise PreconditionError(
                f"Log directory {config.log_directory} is not writable: {e}",
                check_name="Log Directory", original_error=e
            )

        logger.info(f"Transcript: {run_logs.transcript_path}")
        purge_old_logs(config.log_directory, self.log_retention_days)
        return run_logs

    def measure_upload(self, engine: TransferEngine, remote_token: str, fallback_mbps: float) -> float:
        """Single measurement for the run, falling back to a constant"""
        estimator = BandwidthEstimator(engine, runner=self._process_runner)
        mbps = estimator.estimate(remote_token)
        if mbps is None:
            logger.warning(
                f"Upload measurement against {remote_token} failed, using fallback of {fallback_mbps} Mbps"
            )
            return fallback_mbps
        return mbps

    def _execute(self, config: FleetConfig, run_logs: RunLogs) -> int:
        engine = TransferEngine(config.engine_path, config.engine_config_path)

        PreconditionValidator(config, engine, target_host=self.target_host, sleep=self._sleep).run_all_checks()

        prober = DestinationProber(engine, runner=self._process_runner)
        valid_jobs = prober.validate(config.jobs)

        fallback = config.bandwidth.fallback_mbps or FALLBACK_UPLOAD_MBPS
        mbps = self.measure_upload(engine, valid_jobs[0].remote_token, fallback)
        policy = BandwidthPolicy.from_settings(mbps, config.bandwidth)

        launcher = JobLauncher(
            engine, run_logs, spawner=self._spawner, sleep=self._sleep,
            clock=lambda: self._clock().timestamp()
        )
        supervisor = Supervisor(policy, launcher, valid_jobs, clock=self._clock, sleep=self._sleep)
        state = supervisor.run()

        report = build_report(state, valid_jobs, clock=lambda: self._clock().timestamp())
        return finish_run(report, self.notifier, self.console)

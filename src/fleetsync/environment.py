"""
Precondition validation for FleetSync.

This module confirms the host is ready for a run before any job starts:
no competing engine instance, engine binary and engine config present,
and the source volume reachable. The volume probe is retried with growing
delays because network mounts can lag behind host boot or wake.
"""

import os
import socket
import time
import logging
from typing import Callable, List, Optional
from dataclasses import dataclass, field
from enum import Enum

import psutil

from .config import FleetConfig
from .engine import TransferEngine
from .errors import PreconditionError
from .retry import RetryManager, volume_wait_policy


logger = logging.getLogger(__name__)

SMB_PORT = 445


class CheckStatus(Enum):
    """Status of environment checks."""
    PASS = "pass"
    FAIL = "fail"


@dataclass
class EnvironmentCheck:
    """Individual environment check result."""
    name: str
    status: CheckStatus
    message: str
    details: Optional[str] = None
    fix_suggestion: Optional[str] = None


@dataclass
class EnvironmentReport:
    """Complete precondition report."""
    checks: List[EnvironmentCheck] = field(default_factory=list)
    passed: int = 0
    failed: int = 0

    @property
    def is_ready(self) -> bool:
        """Check if the host is ready for a run."""
        return self.failed == 0

    def add_check(self, check: EnvironmentCheck):
        """Add a check result to the report."""
        self.checks.append(check)

        if check.status == CheckStatus.PASS:
            self.passed += 1
        else:
            self.failed += 1


class PreconditionValidator:
    """Validates host readiness; raises PreconditionError on the first failure."""

    def __init__(self, config: FleetConfig, engine: TransferEngine,
                 target_host: Optional[str] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.engine = engine
        self.target_host = target_host
        self.report = EnvironmentReport()
        self._sleep = sleep

    def run_all_checks(self) -> EnvironmentReport:
        """Run every precondition check in order, failing fast."""
        logger.info("Validating preconditions...")

        self.report.add_check(EnvironmentCheck(
            name="Configuration",
            status=CheckStatus.PASS,
            message=f"{len(self.config.jobs)} jobs configured"
        ))

        self._check_competing_instance()
        self._check_engine_binary()
        self._check_engine_config()
        self._check_source_volume()

        logger.info(f"Preconditions satisfied: {self.report.passed} checks passed")
        return self.report

    def _fail(self, check: EnvironmentCheck):
        self.report.add_check(check)
        message = check.message
        if check.details:
            message = f"{message} ({check.details})"
        logger.error(message)
        raise PreconditionError(message, check_name=check.name)

    def find_competing_instances(self) -> List[int]:
        """PIDs of running processes named like the engine binary."""
        binary_name = self.engine.binary_name.lower()
        own_pid = os.getpid()
        pids = []

        for proc in psutil.process_iter(['pid', 'name']):
            try:
                name = (proc.info.get('name') or '').lower()
                if proc.info['pid'] == own_pid:
                    continue
                if name == binary_name or name == f"{binary_name}.exe":
                    pids.append(proc.info['pid'])
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        return pids

    def _check_competing_instance(self):
        pids = self.find_competing_instances()
        if pids:
            self._fail(EnvironmentCheck(
                name="Competing Instance",
                status=CheckStatus.FAIL,
                message=f"{self.engine.binary_name} is already running",
                details=f"PIDs: {', '.join(str(pid) for pid in pids)}",
                fix_suggestion="Wait for the other run to finish or stop it"
            ))

        self.report.add_check(EnvironmentCheck(
            name="Competing Instance",
            status=CheckStatus.PASS,
            message=f"No other {self.engine.binary_name} process running"
        ))

    def _check_engine_binary(self):
        resolved = self.engine.resolve_binary()
        if not resolved:
            self._fail(EnvironmentCheck(
                name="Engine Binary",
                status=CheckStatus.FAIL,
                message=f"Transfer engine not found: {self.engine.engine_path}",
                fix_suggestion="Install the engine or fix 'engine_path' in the configuration"
            ))

        self.report.add_check(EnvironmentCheck(
            name="Engine Binary",
            status=CheckStatus.PASS,
            message=f"Transfer engine found at {resolved}"
        ))

    def _check_engine_config(self):
        config_path = self.engine.config_path
        if not os.path.isfile(config_path):
            self._fail(EnvironmentCheck(
                name="Engine Config",
                status=CheckStatus.FAIL,
                message=f"Transfer engine config not found: {config_path}",
                fix_suggestion="Fix 'engine_config_path' in the configuration"
            ))

        self.report.add_check(EnvironmentCheck(
            name="Engine Config",
            status=CheckStatus.PASS,
            message=f"Transfer engine config found at {config_path}"
        ))

    def host_reachable(self, host: str, port: int = SMB_PORT, timeout: float = 5.0) -> bool:
        """TCP connect test against the volume's host."""
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError as e:
            logger.debug(f"Host {host}:{port} not reachable: {e}")
            return False

    def volume_reachable(self) -> bool:
        """Single probe of the source volume."""
        if self.target_host and not self.host_reachable(self.target_host):
            return False

        path = self.config.source_volume_path
        try:
            if not os.path.isdir(path):
                return False
            os.listdir(path)
            return True
        except OSError as e:
            logger.debug(f"Source volume {path} not readable: {e}")
            return False

    def _check_source_volume(self):
        path = self.config.source_volume_path
        retry = RetryManager(volume_wait_policy(self.config.max_volume_wait_attempts), sleep=self._sleep)

        description = f"Source volume {path}"
        if self.target_host:
            description += f" on {self.target_host}"

        if not retry.poll_until(self.volume_reachable, description=description):
            self._fail(EnvironmentCheck(
                name="Source Volume",
                status=CheckStatus.FAIL,
                message=f"{description} unreachable after {self.config.max_volume_wait_attempts} attempts",
                details=f"waited {retry.total_delay:.0f} seconds",
                fix_suggestion="Check that the NAS is online and the share is mounted"
            ))

        self.report.add_check(EnvironmentCheck(
            name="Source Volume",
            status=CheckStatus.PASS,
            message=f"{description} is reachable",
            details=f"waited {retry.total_delay:.0f} seconds" if retry.total_delay else None
        ))

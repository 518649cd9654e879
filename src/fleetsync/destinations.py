"""
FleetSync - Destination Prober
Checks each configured destination before any resources are committed to
it and splits the job list into valid and invalid jobs.
"""

import re
import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .config import JobSpec
from .engine import TransferEngine
from .errors import NoValidDestinationsError

logger = logging.getLogger(__name__)

_DESTINATION_PATTERN = re.compile(r'^([^:]+):(.*)$')


def split_destination(destination: str) -> Optional[Tuple[str, str]]:
    """Split ``remote:path`` into (``remote:``, ``path``), or None if malformed"""
    match = _DESTINATION_PATTERN.match((destination or "").strip())
    if not match:
        return None
    token, rest = match.groups()
    if not token.strip():
        return None
    return f"{token}:", rest


@dataclass
class ValidatedJob:
    """A job whose destination has been confirmed reachable"""
    job: JobSpec
    remote_token: str

    @property
    def source(self) -> str:
        return self.job.source

    @property
    def destination(self) -> str:
        return self.job.destination

    @property
    def exclude(self) -> Optional[str]:
        return self.job.exclude


@dataclass
class InvalidJob:
    """A job dropped during validation, with the reason"""
    job: JobSpec
    reason: str


class DestinationProber:
    """Probes remotes with a read-only listing of the bare remote token"""

    def __init__(self, engine: TransferEngine, timeout: float = 60.0,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.engine = engine
        self.timeout = timeout
        self._run = runner
        self._results: Dict[str, bool] = {}

    def probe(self, remote_token: str) -> bool:
        """True if listing ``remote_token`` exits with status 0"""
        if remote_token in self._results:
            return self._results[remote_token]

        cmd = self.engine.list_command(remote_token)
        try:
            result = self._run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout
            )
            reachable = result.returncode == 0
            if not reachable:
                stderr = (result.stderr or "").strip().splitlines()
                detail = stderr[-1] if stderr else "no error output"
                logger.warning(f"Remote {remote_token} listing exited with code {result.returncode}: {detail}")
        except subprocess.TimeoutExpired:
            logger.warning(f"Remote {remote_token} listing timed out after {self.timeout:.0f} seconds")
            reachable = False
        except OSError as e:
            logger.warning(f"Could not run listing for remote {remote_token}: {e}")
            reachable = False

        self._results[remote_token] = reachable
        return reachable

    def partition(self, jobs: List[JobSpec]) -> Tuple[List[ValidatedJob], List[InvalidJob]]:
        """Split jobs into reachable and dropped, keeping configuration order"""
        valid: List[ValidatedJob] = []
        invalid: List[InvalidJob] = []

        for number, job in enumerate(jobs, start=1):
            parts = split_destination(job.destination)
            if parts is None:
                reason = f"destination '{job.destination}' is not in remote:path form"
                logger.warning(f"Skipping job {number} ({job.source}): {reason}")
                invalid.append(InvalidJob(job=job, reason=reason))
                continue

            remote_token, _ = parts
            if not self.probe(remote_token):
                reason = f"remote {remote_token} is not reachable"
                logger.warning(f"Skipping job {number} ({job.source} -> {job.destination}): {reason}")
                invalid.append(InvalidJob(job=job, reason=reason))
                continue

            valid.append(ValidatedJob(job=job, remote_token=remote_token))

        logger.info(f"Destination validation: {len(valid)} valid, {len(invalid)} invalid")
        return valid, invalid

    def validate(self, jobs: List[JobSpec]) -> List[ValidatedJob]:
        """Valid jobs only; raises NoValidDestinationsError when none remain"""
        valid, invalid = self.partition(jobs)
        if not valid:
            reasons = "; ".join(f"{item.job.destination}: {item.reason}" for item in invalid)
            raise NoValidDestinationsError(
                f"No reachable destinations among {len(jobs)} configured jobs ({reasons})",
                invalid_count=len(invalid)
            )
        return valid

"""
FleetSync - Run Report
Classifies the finished run from final exit codes, prints a per-job
summary and sends the closing notification.
"""

import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from rich.console import Console
from rich.table import Table

from .destinations import ValidatedJob
from .notify import Notifier
from .supervisor import SupervisorState, format_duration

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Final status of a job"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_STARTED = "not started"


@dataclass
class JobOutcome:
    """Final result for one job"""
    index: int
    source: str
    destination: str
    status: JobStatus
    exit_code: Optional[int] = None
    duration: float = 0.0
    log_path: Optional[str] = None

    def summary_line(self) -> str:
        if self.status == JobStatus.SUCCEEDED:
            return (f"Job {self.index}: {self.source} -> {self.destination} succeeded "
                    f"in {format_duration(self.duration)}")
        if self.status == JobStatus.FAILED:
            return (f"Job {self.index}: {self.source} -> {self.destination} failed "
                    f"with exit code {self.exit_code}, log: {self.log_path}")
        return f"Job {self.index}: {self.source} -> {self.destination} was not started"


@dataclass
class RunReport:
    """Aggregate result of a run"""
    outcomes: List[JobOutcome] = field(default_factory=list)

    @property
    def tracked(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if o.status != JobStatus.NOT_STARTED]

    @property
    def succeeded(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if o.status == JobStatus.SUCCEEDED]

    @property
    def failed(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if o.status == JobStatus.FAILED]

    @property
    def success(self) -> bool:
        """True only if at least one job ran and every tracked exit code is zero"""
        tracked = self.tracked
        return bool(tracked) and all(o.exit_code == 0 for o in tracked)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


def build_report(state: SupervisorState, valid_jobs: List[ValidatedJob],
                 clock: Callable[[], float] = time.time) -> RunReport:
    """Collect final exit codes for every valid job"""
    report = RunReport()
    now = clock()

    for index, validated_job in enumerate(valid_jobs, start=1):
        job = state.jobs.get(index)
        if job is None:
            report.outcomes.append(JobOutcome(
                index=index,
                source=validated_job.source,
                destination=validated_job.destination,
                status=JobStatus.NOT_STARTED
            ))
            continue

        exit_code = state.finished.get(index, job.poll())
        end_time = job.end_time if job.end_time is not None else now
        report.outcomes.append(JobOutcome(
            index=index,
            source=validated_job.source,
            destination=validated_job.destination,
            status=JobStatus.SUCCEEDED if exit_code == 0 else JobStatus.FAILED,
            exit_code=exit_code,
            duration=end_time - job.start_time,
            log_path=job.log_path
        ))

    return report


def render_report(report: RunReport, console: Optional[Console] = None):
    """Log one line per job and print the summary table"""
    for outcome in report.outcomes:
        if outcome.status == JobStatus.SUCCEEDED:
            logger.info(outcome.summary_line())
        else:
            logger.warning(outcome.summary_line())

    if console is None:
        return

    table = Table(title="Run Summary", show_header=True, header_style="bold magenta")
    table.add_column("Job", style="cyan", width=4)
    table.add_column("Source")
    table.add_column("Destination")
    table.add_column("Status", width=12)
    table.add_column("Details", style="dim")

    for outcome in report.outcomes:
        if outcome.status == JobStatus.SUCCEEDED:
            status = "[green]SUCCEEDED[/green]"
            details = format_duration(outcome.duration)
        elif outcome.status == JobStatus.FAILED:
            status = "[red]FAILED[/red]"
            details = f"exit {outcome.exit_code}, {outcome.log_path}"
        else:
            status = "[yellow]NOT STARTED[/yellow]"
            details = ""
        table.add_row(str(outcome.index), outcome.source, outcome.destination, status, details)

    console.print(table)


def finish_run(report: RunReport, notifier: Notifier, console: Optional[Console] = None) -> int:
    """Report the run, send the aggregate notification and return the exit status"""
    render_report(report, console)

    total = len(report.outcomes)
    if report.success:
        message = f"All {len(report.succeeded)} jobs completed successfully"
        logger.info(message)
        notifier.notify("FleetSync finished", message)
    else:
        message = f"{len(report.failed)} of {total} jobs failed"
        if not report.tracked:
            message = f"None of the {total} jobs could be started"
        logger.error(message)
        notifier.notify("FleetSync failed", message)

    return report.exit_code

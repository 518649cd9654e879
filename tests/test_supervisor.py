"""
Tests for the supervisor loop: relaunch on bucket change, heartbeats,
exit reporting and stall detection.
"""

import logging
import os
import shutil
from datetime import datetime

import pytest

from fleetsync.bandwidth import BandwidthPolicy, Bucket
from fleetsync.engine import EngineOptions, TransferEngine
from fleetsync.launcher import JobLauncher
from fleetsync.logs import RunLogs
from fleetsync.report import build_report
from fleetsync.supervisor import Supervisor, SupervisorPhase, read_log_stats

from fakes import FakeClock


def _supervisor(tmp_path, spawner, valid_jobs, clock, mbps=10.0):
    engine = TransferEngine("rclone", "/etc/rclone.conf", EngineOptions(transfers=16))
    run_logs = RunLogs(str(tmp_path / "logs"), run_stamp="run")
    run_logs.ensure_directory()
    launcher = JobLauncher(engine, run_logs, spawner=spawner, sleep=lambda s: None,
                           clock=clock.timestamp)
    return Supervisor(
        BandwidthPolicy(measured_upload_mbps=mbps), launcher, valid_jobs,
        clock=clock, sleep=lambda s: None, usage_sampler=lambda pid: (1.5, 50 * 1024 * 1024)
    )


def _warnings(caplog, text):
    return [r for r in caplog.records if r.levelno == logging.WARNING and text in r.getMessage()]


class TestBucketRelaunch:
    """Day/night transitions restart the whole fleet once."""

    def test_crossing_18_00_relaunches_once(self, tmp_path, spawner, valid_jobs):
        clock = FakeClock(datetime(2024, 5, 1, 17, 59, 50))
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, clock)

        state = supervisor.start()
        assert state.bucket == Bucket.DAY
        assert state.cap_kbs == pytest.approx(312.5)
        original = list(spawner.processes)

        clock.advance(15)
        supervisor.tick(state)

        assert state.relaunch_count == 1
        assert state.bucket == Bucket.NIGHT
        assert state.cap_kbs == pytest.approx(468.75)
        assert all(p.killed for p in original)
        assert sorted(state.jobs) == [1, 2]
        assert state.jobs[1].validated_job is valid_jobs[0]
        assert state.jobs[2].validated_job is valid_jobs[1]
        assert len(spawner.alive()) == 2
        assert len(state.alive_jobs()) == 2
        for cmd in spawner.commands[2:]:
            assert cmd[cmd.index("--bwlimit") + 1] == "468.75K"

        clock.advance(15)
        supervisor.tick(state)
        assert state.relaunch_count == 1
        assert len(spawner.processes) == 4

    def test_no_relaunch_within_bucket(self, tmp_path, spawner, valid_jobs, noon_clock):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        state = supervisor.start()

        for _ in range(3):
            noon_clock.advance(15)
            supervisor.tick(state)

        assert state.relaunch_count == 0
        assert len(spawner.processes) == 2

    def test_bucket_change_with_equal_cap_keeps_fleet(self, tmp_path, spawner, valid_jobs):
        clock = FakeClock(datetime(2024, 5, 1, 17, 59, 50))
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, clock)
        supervisor.policy.night_fraction = supervisor.policy.day_fraction
        state = supervisor.start()

        clock.advance(15)
        supervisor.tick(state)

        assert state.bucket == Bucket.NIGHT
        assert state.relaunch_count == 0
        assert not any(p.killed for p in spawner.processes)

    def test_failure_before_bucket_change_is_kept(self, tmp_path, spawner, valid_jobs):
        clock = FakeClock(datetime(2024, 5, 1, 17, 59, 50))
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, clock)
        state = supervisor.start()
        failed = state.jobs[2]
        spawner.processes[1].finish(1)
        supervisor.tick(state)
        assert state.finished == {2: 1}

        clock.advance(15)
        supervisor.tick(state)

        assert state.relaunch_count == 1
        assert len(spawner.processes) == 3
        assert state.jobs[2] is failed
        assert not spawner.processes[1].killed
        restarted = spawner.commands[2]
        assert restarted[restarted.index("copy") + 1] == valid_jobs[0].source

        for process in spawner.alive():
            process.finish(0)
        supervisor.run(state)
        report = build_report(state, valid_jobs, clock=clock.timestamp)

        assert not report.success
        assert [o.index for o in report.failed] == [2]
        assert report.failed[0].exit_code == 1

    def test_job_not_restarted_is_reported_failed(self, tmp_path, spawner, valid_jobs, caplog):
        clock = FakeClock(datetime(2024, 5, 1, 17, 59, 50))
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, clock)
        state = supervisor.start()
        shutil.rmtree(valid_jobs[0].source)

        clock.advance(15)
        supervisor.tick(state)

        assert len(spawner.processes) == 3
        assert state.jobs[1].process is spawner.processes[0]
        assert len(_warnings(caplog, "Job 1: could not be restarted")) == 1

        for process in spawner.alive():
            process.finish(0)
        supervisor.run(state)
        report = build_report(state, valid_jobs, clock=clock.timestamp)

        assert [o.index for o in report.failed] == [1]


class TestHeartbeats:
    """Telemetry and one-shot exit warnings."""

    def test_heartbeat_fields(self, tmp_path, spawner, valid_jobs, noon_clock):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        state = supervisor.start()
        job = state.jobs[1]
        with open(job.log_path, "w") as f:
            f.write("INFO  : starting\n")
            f.write("INFO  : Transferred: 5 GiB / 10 GiB, 50%, 1 MiB/s, ETA 1h\n")

        noon_clock.advance(90)
        heartbeat = supervisor.sample(job)

        assert heartbeat.elapsed_seconds == pytest.approx(90)
        assert heartbeat.cpu_seconds == 1.5
        assert heartbeat.log_lines == 2
        assert heartbeat.progress == 50.0
        assert "progress 50%" in heartbeat.format()

    def test_log_lines_accumulate_across_samples(self, tmp_path, spawner, valid_jobs, noon_clock):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        state = supervisor.start()
        job = state.jobs[1]
        with open(job.log_path, "w") as f:
            f.write("INFO  : one\nINFO  : two\n")
        supervisor.sample(job)

        with open(job.log_path, "a") as f:
            f.write("INFO  : three\n")
        heartbeat = supervisor.sample(job)

        assert heartbeat.log_lines == 3
        assert job.log_lines == 3
        assert job.log_offset == os.path.getsize(job.log_path)

    def test_progress_unknown_without_log(self, tmp_path, spawner, valid_jobs, noon_clock):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        state = supervisor.start()

        heartbeat = supervisor.sample(state.jobs[2])

        assert heartbeat.progress is None
        assert heartbeat.log_lines is None
        assert "progress unknown" in heartbeat.format()

    def test_failed_exit_warned_once(self, tmp_path, spawner, valid_jobs, noon_clock, caplog):
        caplog.set_level(logging.INFO, logger="fleetsync")
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        state = supervisor.start()
        spawner.processes[1].finish(1)

        supervisor.tick(state)
        supervisor.tick(state)

        assert len(_warnings(caplog, "Job 2: exited with code 1")) == 1
        assert state.jobs[2].end_time == noon_clock.timestamp()

    def test_heartbeat_failure_downgraded(self, tmp_path, spawner, valid_jobs, noon_clock, caplog):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        supervisor._sample_usage = lambda pid: (_ for _ in ()).throw(RuntimeError("boom"))
        state = supervisor.start()

        supervisor.tick(state)

        assert len(_warnings(caplog, "heartbeat failed")) == 2
        assert state.phase == SupervisorPhase.RUNNING

    def test_run_drains(self, tmp_path, spawner, valid_jobs, noon_clock):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)

        def finish_all(seconds):
            for process in spawner.processes:
                process.finish(0)

        supervisor._sleep = finish_all
        state = supervisor.run()

        assert state.phase == SupervisorPhase.DRAINED
        assert all(job.exit_code == 0 for job in state.jobs.values())
        assert all(job.exit_reported for job in state.jobs.values())


class TestStallDetection:
    """Quiet logs with live processes are warned about, never killed."""

    def test_six_minute_old_log_warns(self, tmp_path, spawner, valid_jobs, noon_clock, caplog):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        state = supervisor.start()
        for job in state.jobs.values():
            with open(job.log_path, "w") as f:
                f.write("INFO  : Transferred: 1 GiB / 10 GiB, 10%, 1 MiB/s\n")
        stale = noon_clock.timestamp() - 360
        os.utime(state.jobs[1].log_path, (stale, stale))
        fresh = noon_clock.timestamp() - 30
        os.utime(state.jobs[2].log_path, (fresh, fresh))

        supervisor.tick(state)
        supervisor.tick(state)

        stalls = _warnings(caplog, "not written for")
        assert len(stalls) == 1
        assert "Job 1" in stalls[0].getMessage()
        assert "6.0 minutes" in stalls[0].getMessage()
        assert not any(p.killed for p in spawner.processes)
        assert state.jobs[1].is_alive

    def test_stall_rearms_after_activity(self, tmp_path, spawner, valid_jobs, noon_clock, caplog):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        state = supervisor.start()
        job = state.jobs[1]
        with open(job.log_path, "w") as f:
            f.write("line\n")

        stale = noon_clock.timestamp() - 400
        os.utime(job.log_path, (stale, stale))
        supervisor.tick(state)
        assert job.stall_warned

        os.utime(job.log_path, (noon_clock.timestamp(), noon_clock.timestamp()))
        supervisor.tick(state)
        assert not job.stall_warned

    def test_missing_log_uses_start_time(self, tmp_path, spawner, valid_jobs, noon_clock, caplog):
        supervisor = _supervisor(tmp_path, spawner, valid_jobs, noon_clock)
        state = supervisor.start()

        noon_clock.advance(301)
        supervisor.tick(state)

        assert len(_warnings(caplog, "not written for")) == 2


class TestReadLogStats:

    def test_missing_file(self, tmp_path):
        assert read_log_stats(str(tmp_path / "none.log")) is None

    def test_counts_lines_and_finds_last_progress(self, tmp_path):
        path = tmp_path / "engine.log"
        path.write_text("a 10%\nb 20%\nc no progress\n")

        stats = read_log_stats(str(path))

        assert stats.lines == 3
        assert stats.offset == path.stat().st_size
        assert stats.last_write == pytest.approx(os.path.getmtime(path))
        assert stats.progress == 20.0

    def test_counts_only_appended_bytes(self, tmp_path):
        path = tmp_path / "engine.log"
        path.write_text("a\nb\n")
        first = read_log_stats(str(path))

        with open(path, "a") as f:
            f.write("c 40%\n")
        # pretend 10 earlier lines were seen; only the new line is added
        second = read_log_stats(str(path), offset=first.offset, lines=10)

        assert second.lines == 11
        assert second.offset == path.stat().st_size
        assert second.progress == 40.0

    def test_shorter_log_recounted(self, tmp_path):
        path = tmp_path / "engine.log"
        path.write_text("a\n")

        stats = read_log_stats(str(path), offset=1000, lines=50)

        assert stats.lines == 1
        assert stats.offset == 2

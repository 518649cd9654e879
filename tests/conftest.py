"""
Shared fixtures: fake engine processes, a controllable clock and config files.
"""

import os
import sys
from datetime import datetime

import pytest
import yaml

# Add src to path for testing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
sys.path.insert(0, os.path.dirname(__file__))

from fleetsync.config import JobSpec
from fleetsync.destinations import ValidatedJob

from fakes import FakeClock, FakeSpawner


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def noon_clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, 0))


@pytest.fixture
def sources(tmp_path):
    paths = []
    for name in ("photos", "video"):
        path = tmp_path / "nas" / name
        path.mkdir(parents=True)
        paths.append(str(path))
    return paths


@pytest.fixture
def valid_jobs(sources):
    return [
        ValidatedJob(job=JobSpec(source=sources[0], destination="b2:archive/photos"), remote_token="b2:"),
        ValidatedJob(job=JobSpec(source=sources[1], destination="gdrive:backup/video", exclude="*.tmp"),
                     remote_token="gdrive:"),
    ]


@pytest.fixture
def host_setup(tmp_path, sources):
    """Engine binary, engine config and source volume that all exist"""
    engine_path = tmp_path / "bin" / "rclone"
    engine_path.parent.mkdir()
    engine_path.write_text("#!/bin/sh\n")
    engine_config = tmp_path / "rclone.conf"
    engine_config.write_text("[b2]\ntype = b2\n")
    return {
        "source_volume_path": str(tmp_path / "nas"),
        "engine_path": str(engine_path),
        "engine_config_path": str(engine_config),
        "log_directory": str(tmp_path / "logs"),
        "max_volume_wait_attempts": 3,
        "jobs": [
            {"source": sources[0], "destination": "b2:archive/photos"},
            {"source": sources[1], "destination": "gdrive:backup/video", "exclude": "*.tmp"},
        ],
    }


@pytest.fixture
def write_config(tmp_path):
    def _write(data, name="config.yaml"):
        path = tmp_path / name
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f)
        return str(path)
    return _write

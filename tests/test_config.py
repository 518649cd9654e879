"""
Tests for configuration loading.
"""

import pytest

from fleetsync.config import BandwidthSettings, load_config, parse_config
from fleetsync.errors import ConfigError


class TestLoadConfig:
    """YAML loading and structural validation."""

    def test_loads_valid_file(self, host_setup, write_config):
        config = load_config(write_config(host_setup))

        assert config.max_volume_wait_attempts == 3
        assert len(config.jobs) == 2
        assert config.jobs[0].exclude is None
        assert config.jobs[1].exclude == "*.tmp"
        assert config.bandwidth.day_fraction == 0.5
        assert config.bandwidth.fallback_mbps == 2.4

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "absent.yaml"))

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("jobs: [unclosed\n")

        with pytest.raises(ConfigError, match="Could not parse"):
            load_config(str(path))

    def test_missing_required_keys(self, host_setup):
        del host_setup["engine_path"]
        del host_setup["log_directory"]

        with pytest.raises(ConfigError) as excinfo:
            parse_config(host_setup)

        assert "engine_path" in str(excinfo.value)
        assert "log_directory" in str(excinfo.value)

    def test_job_missing_destination(self, host_setup):
        host_setup["jobs"] = [{"source": "/data"}]

        with pytest.raises(ConfigError, match="Job 1"):
            parse_config(host_setup)

    def test_empty_job_list(self, host_setup):
        host_setup["jobs"] = []

        with pytest.raises(ConfigError, match="At least one job"):
            parse_config(host_setup)

    def test_malformed_destination_is_not_a_config_error(self, host_setup):
        host_setup["jobs"] = [{"source": "/data", "destination": "no-remote"}]

        config = parse_config(host_setup)

        assert config.jobs[0].destination == "no-remote"

    def test_bandwidth_overrides(self, host_setup):
        host_setup["bandwidth"] = {"day_start_hour": 7, "day_end_hour": 19, "night_fraction": 0.9}

        config = parse_config(host_setup)

        assert config.bandwidth.day_start_hour == 7
        assert config.bandwidth.night_fraction == 0.9

    def test_unknown_bandwidth_key(self, host_setup):
        host_setup["bandwidth"] = {"dayfraction": 0.3}

        with pytest.raises(ConfigError, match="Invalid bandwidth"):
            parse_config(host_setup)

    def test_invalid_day_window(self):
        with pytest.raises(ConfigError):
            BandwidthSettings(day_start_hour=20, day_end_hour=6)

"""
FleetSync - Supervisor for parallel bulk transfer jobs.

Validates the host, measures upload bandwidth once, launches one transfer
engine process per configured job and supervises the fleet until it drains.
"""

__version__ = "0.1.0"
__author__ = "FleetSync Team"

# Supervision thresholds
POLL_INTERVAL_SECONDS = 15
STALL_THRESHOLD_SECONDS = 300
LAUNCH_STAGGER_SECONDS = 2.0
FALLBACK_UPLOAD_MBPS = 2.4

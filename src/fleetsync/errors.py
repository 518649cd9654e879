"""
FleetSync - Error Taxonomy
Every exception here aborts the run before any job starts. Degraded and
runtime conditions are reported as warnings and never raised out of the loop.
"""

import time


class FleetError(Exception):
    """Base class for FleetSync errors"""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error
        self.timestamp = time.time()


class PreconditionError(FleetError):
    """Host is not ready for a run"""
    def __init__(self, message: str, check_name: str = None, original_error: Exception = None):
        super().__init__(message, original_error=original_error)
        self.check_name = check_name


class ConfigError(PreconditionError):
    """Configuration file missing, unparseable or incomplete"""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message, check_name="Configuration", original_error=original_error)


class NoValidDestinationsError(PreconditionError):
    """Every configured destination failed validation"""
    def __init__(self, message: str, invalid_count: int = 0):
        super().__init__(message, check_name="Destinations")
        self.invalid_count = invalid_count

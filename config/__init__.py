"""Runtime settings for Clarity-Pilot.

Account credentials, timeouts and the on-disk locations of the session
record, storage snapshot and budget ledger all resolve through
``get_config()``.
"""

from config.settings import GlobalConfig, get_config

__all__ = ["GlobalConfig", "get_config"]

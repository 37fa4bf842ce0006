"""
Drift Agent

Unattended fleet inventory agent. Discovers deployed applications and their
runtime configuration on registered hosts and keeps the results as a
versioned snapshot history.
"""

from .version import __version__
from .config import AgentConfig, load_config
from .models import Application, Host, SearchPath
from .monitor import Monitor
from .schedule import Schedule
from .store import SnapshotStore, StoreError

__all__ = [
    "__version__",
    "AgentConfig",
    "load_config",
    "Application",
    "Host",
    "SearchPath",
    "Monitor",
    "Schedule",
    "SnapshotStore",
    "StoreError",
]

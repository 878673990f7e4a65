"""
batchflow - Two-tier batch workflow model and execution engine

Flows depend on flows; each flow runs its phases in fixed order; each
phase runs its units in blocker order. Flows are stored as flat
`key = value` documents and executed with bounded concurrency.
"""

__version__ = "0.1.0"


__all__ = ["BatchflowConfig", "load_config", "get_batchflow_home"]

from .config import BatchflowConfig, load_config, get_batchflow_home

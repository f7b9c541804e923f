"""Background workers."""
from .pending_sweeper import run_sweep, start_pending_sweeper

__all__ = ["run_sweep", "start_pending_sweeper"]

"""Survival-oriented cell and position audit agent.

This package provides a background agent that samples network attachment
changes and periodic position fixes, keeps a persisted heartbeat, and arms a
wake timer to resurrect sampling after the process has been killed.
"""

__version__ = "0.1.0"

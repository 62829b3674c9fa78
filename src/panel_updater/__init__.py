"""
Panel Updater - self-update and rollback orchestrator for the network panel.

This package snapshots the running application tree, pulls and installs the
latest code, restarts the process supervisor, and restores earlier snapshots,
streaming every step to an observer as it happens.
"""

__version__ = "0.1.0"

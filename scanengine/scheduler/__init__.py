"""
Scheduler module for scheduled scans.
"""
from .jobs import setup_scheduler, shutdown_scheduler, scheduler

__all__ = ["setup_scheduler", "shutdown_scheduler", "scheduler"]

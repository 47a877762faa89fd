"""Lease reaper module."""

from jobqueue.reaper.main import Reaper

__all__ = ["Reaper"]

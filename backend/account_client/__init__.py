"""
Account Client Package

Polls the public stats API for the account summary shown alongside
the per-machine progress.
"""

from .poller import AccountPoller, parse_summary

__all__ = ["AccountPoller", "parse_summary"]

"""
Services of the monitor: scale supervision, the monitoring loop and the
sinks it feeds (SQLite event log, HTTP backend).
"""

__all__ = ["logging", "monitor", "storage", "supervisor", "telemetry"]

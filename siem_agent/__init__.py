"""
SIEM log-shipping agent.

Tails local security logs, normalizes each line into an Event, buffers events
durably and forwards them in batches to a remote collector.
"""

__version__ = "0.3.0"

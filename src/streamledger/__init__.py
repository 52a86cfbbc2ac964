"""
StreamLedger - Broadcast session reconstruction and analytics.

Rebuilds broadcast segments and sessions from a streaming platform's event log
and computes per-session rollups.
"""

__version__ = "0.1.0"

"""
CNAME DNS Failover

Keeps a public alias (CNAME) pointed at whichever of two backend host
records is healthy, with hysteresis on both failover and failback.
"""

__version__ = "1.0.0"

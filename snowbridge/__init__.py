"""
SnowBridge - Prometheus Alertmanager to ServiceNow incident bridge.
"""

__version__ = "1.0.0"

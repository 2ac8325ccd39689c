"""
Logging, metrics and notification sinks.
"""

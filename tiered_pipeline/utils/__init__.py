"""
Shared helpers: input validation, retries, timeouts and time handling.
"""

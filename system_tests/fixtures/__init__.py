"""
System test fixtures package.
"""

from system_tests.fixtures.log_scan import LogCapture, LogScanner

__all__ = [
    "LogCapture",
    "LogScanner",
]

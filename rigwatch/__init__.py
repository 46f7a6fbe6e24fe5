"""
rigwatch - telemetry acquisition for home mining hardware
"""

__version__ = "0.1.0"

"""
Support-level spot trading engine for Bybit
"""

__version__ = "1.0.0"

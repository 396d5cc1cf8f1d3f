"""
Backpack Poller - streaming market data logger for the Backpack exchange.

This package keeps a single WebSocket subscription to Backpack stream
channels alive and logs every message it receives.
"""

__version__ = "1.0.0"
__author__ = "Backpack Poller Team"

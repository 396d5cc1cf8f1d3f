"""
Services package for Backpack Poller.

Contains:
- poller: WebSocket stream subscription and message logging
"""

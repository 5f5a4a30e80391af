"""
Logging subsystem: handlers for application logging.

Modules:

- :mod:`RewardsTracker.log.log` – Log setup, the in-memory tank handler and the Qt message bridge.
"""

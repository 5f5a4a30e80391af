"""
Settings package: configuration API and schema validation.

This package provides:

- :mod:`RewardsTracker.settings.lib` – Application paths, sync.json schema validation and the settings API.
"""

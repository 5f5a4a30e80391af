"""Test suite for RewardsTracker.

Run with:
    python -m unittest discover -s tests -t .
"""
from PySide6 import QtCore

# Keep tests out of the user's real app data; must happen before the settings singleton is created
QtCore.QStandardPaths.setTestModeEnabled(True)

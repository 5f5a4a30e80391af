"""
Core package for RewardsTracker providing the sync engine.

This package includes:

- :mod:`RewardsTracker.core.records` – Entities, snapshots, business keys and the local record API.
- :mod:`RewardsTracker.core.database` – Local SQLite store for the merged state and its metadata.
- :mod:`RewardsTracker.core.journal` – Dirty tracking and deletion intents awaiting upload.
- :mod:`RewardsTracker.core.remote` – The remote adapter contract shared by both transports.
- :mod:`RewardsTracker.core.filestore` – Shared-file transport with change notification and polling.
- :mod:`RewardsTracker.core.service` – Google Sheets record-store transport.
- :mod:`RewardsTracker.core.auth` – Google OAuth2 authentication and credential management.
- :mod:`RewardsTracker.core.merge` – Deterministic reconciliation of local and remote snapshots.
- :mod:`RewardsTracker.core.sync` – The sync orchestrator: debouncing, cycles and status.
- :mod:`RewardsTracker.core.catalog` – Read-only card catalog feed with cached and bundled fallbacks.
- :mod:`RewardsTracker.core.engine` – Assembles all of the above from settings.
"""

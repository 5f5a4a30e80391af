"""Status package: enums and exceptions for handling sync state and errors.

This package defines:
    - Status: a StrEnum of possible sync and configuration states
    - STATUS_MESSAGE: default user-facing messages per status
    - get_message: helper to retrieve messages for statuses
    - BaseStatusException: base exception for status-driven error handling
    - Specific exceptions (e.g., TransportUnavailableException) tagged with statuses
"""

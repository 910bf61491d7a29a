# -*- coding: utf-8 -*-


class BulkError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ConfigurationError(BulkError):
    """Missing or invalid session/config values. Fatal before any task is scheduled."""


class TransportError(BulkError):
    """Send or connect failure against the messaging service."""


class DownloadError(BulkError):
    """Non-2xx response or timeout while fetching an artifact."""


class ImageProcessingError(BulkError):
    """Malformed image input for resize/split."""


class TaskTimeout(BulkError):
    """No terminal bot event arrived before the task deadline."""

from __future__ import annotations


class SoulspaceError(Exception):
    """Base error for the soulspace engine."""


class DeviceUnavailableError(SoulspaceError):
    """Raised when the platform audio subsystem is missing or blocked."""


class DeviceSuspendedError(SoulspaceError):
    """Raised when a suspended output device refuses to resume."""


class InvalidParameterError(SoulspaceError):
    """Raised when a setter receives a value it cannot interpret."""


class PersistenceError(SoulspaceError):
    """Raised when a snapshot cannot be serialized, stored or read back."""

"""
Abstract Base Status Store

This module contains the abstract base class that defines the interface
for all status record storage implementations.
"""

from abc import ABC, abstractmethod

from .status import SessionKey, StoreStats


class StatusStore(ABC):
    """
    Abstract base class for session status records.

    One short text record is kept per session key. The dispatcher owns the
    store; each session worker writes only its own key.

    The interface is designed to support:
    - Plain reads and writes by the worker
    - Atomic admission of a new session (single-flight per key)
    - Atomic one-shot consumption of a terminal record
    - Store statistics and monitoring
    """

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - automatic cleanup."""
        self.close()

    def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def get_status(self, key: SessionKey) -> str | None:
        """
        Get the status record for a session key.

        Args:
            key: The session key

        Returns:
            The first line of the record, or None if the key is idle
        """
        pass

    @abstractmethod
    def set_status(self, key: SessionKey, status: str) -> None:
        """
        Replace the status record for a session key.

        Args:
            key: The session key
            status: New record; only its first line is kept
        """
        pass

    @abstractmethod
    def remove_status(self, key: SessionKey) -> None:
        """
        Remove the record, returning the key to idle.

        Args:
            key: The session key
        """
        pass

    @abstractmethod
    def admit(self, key: SessionKey) -> bool:
        """
        Atomically start a session for a key.

        The record is set to REQUESTED only if it is absent or terminal
        (DONE or ERROR). Check and write happen as one step, so two
        concurrent callers can never both be admitted.

        Args:
            key: The session key

        Returns:
            True if the session was admitted, False if the key is busy
        """
        pass

    @abstractmethod
    def consume(self, key: SessionKey, expected: str) -> bool:
        """
        Atomically delete the record if it still equals ``expected``.

        Args:
            key: The session key
            expected: The record content the caller observed

        Returns:
            True if this caller removed the record
        """
        pass

    @abstractmethod
    def records(self) -> dict[SessionKey, str]:
        """
        Get every stored record.

        Returns:
            Mapping of session key to record
        """
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every record."""
        pass

    def has_status(self, key: SessionKey) -> bool:
        """Check whether a record exists for the key."""
        return self.get_status(key) is not None

    @abstractmethod
    def get_store_stats(self) -> StoreStats:
        """
        Get store statistics.

        Returns:
            StoreStats object with record counts by kind
        """
        pass

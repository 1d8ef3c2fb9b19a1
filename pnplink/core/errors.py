"""Error taxonomy shared by the device and gateway sides."""

from __future__ import annotations

from typing import Optional


class PnPError(RuntimeError):
    """Base class for pnplink errors."""


class TransportError(PnPError):
    """Raised when the device session is not connected or a hub request fails."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class EncodingError(PnPError, ValueError):
    """Raised when a wire document does not follow the component convention."""


class InvalidPropertyValue(PnPError, ValueError):
    """Raised when a desired value is empty or cannot be coerced.

    The ack tracker converts it into an ``INVALID`` acknowledgment instead of
    letting it escape.
    """


class StaleVersion(PnPError):
    """Raised internally when an update or ack is older than the latest seen."""

    def __init__(self, key: tuple[str, str], version: int, latest: int) -> None:
        super().__init__(
            f"{key[0]}.{key[1]}: version {version} is older than {latest}"
        )
        self.key = key
        self.version = version
        self.latest = latest


class RegistryError(PnPError):
    """Raised when the hub registry rejects a request."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

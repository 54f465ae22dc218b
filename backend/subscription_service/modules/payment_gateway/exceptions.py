"""Payment gateway errors."""

from typing import Optional


class GatewayError(Exception):
    """The payment gateway rejected a call or could not be reached.

    Attributes:
        code: Provider error code, or ``timeout`` / ``network_error`` for
            transport failures
        message: Human readable description from the provider
        status_code: HTTP status returned by the provider, if any
        retriable: Whether repeating the call may succeed
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        retriable: bool = False,
    ):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.status_code = status_code
        self.retriable = retriable

    @property
    def is_timeout(self) -> bool:
        return self.code == "timeout"

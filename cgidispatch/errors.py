#
# This file is part of cgidispatch released under the MIT license.
# See the NOTICE for more information.

"""
Dispatch Error Classes

Exception hierarchy shared by the dispatcher, the registry, the worker
protocol and the fleet commands.
"""


class DispatchError(Exception):
    """Base exception for all cgidispatch errors."""

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigError(DispatchError):
    """ Exception raised on config error """

    def __init__(self, message):
        super().__init__(message)


class RegistryError(DispatchError):
    """Raised when the worker registry cannot be read or written."""

    def __init__(self, message, path=None):
        details = {"path": path} if path else {}
        super().__init__(message, details)
        self.path = path


class RegistryLockError(RegistryError):
    """Raised when the registry lock cannot be acquired in time."""

    def __init__(self, path, timeout):
        super().__init__(
            f"Could not acquire registry lock within {timeout}s",
            path=path
        )
        self.timeout = timeout


class ProtocolError(DispatchError):
    """Raised when a protocol line or a framed response is malformed."""

    def __init__(self, message="Protocol error", raw_data=None):
        details = {}
        if raw_data is not None:
            # Truncate raw data for safety
            if isinstance(raw_data, bytes):
                raw_data = raw_data[:100].hex()
            details["raw_data"] = str(raw_data)[:200]
        super().__init__(message, details)


class NameResolutionError(DispatchError):
    """Raised when a port name does not resolve to an endpoint."""

    def __init__(self, port, endpoint=None):
        details = {"endpoint": endpoint} if endpoint else {}
        super().__init__(f"Unknown port: {port}", details)
        self.port = port
        self.endpoint = endpoint


class FormDecodeError(DispatchError):
    """Raised when submitted form data cannot be decoded."""

    def __init__(self, message, field=None):
        details = {"field": field} if field is not None else {}
        super().__init__(message, details)
        self.field = field


class SpawnError(DispatchError):
    """Raised when a worker program cannot be started."""

    def __init__(self, program, reason):
        super().__init__(f"Failed to start worker {program}",
                         details={"reason": str(reason)})
        self.program = program

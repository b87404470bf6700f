# src/core/errors.py
"""
Exceptions raised by peer management.

Every failure the CLI reports with ``[ERROR]`` derives from ``VpnError``.
"""


class VpnError(Exception):
    """Base class for peer management failures."""
    pass


class InvalidNameError(VpnError, ValueError):
    """The peer name is empty or cannot be used as an identifier."""
    pass


class DuplicateNameError(VpnError, ValueError):
    """An active peer with this name already exists."""
    pass


class NotFoundError(VpnError, LookupError):
    """No active peer with this name exists."""
    pass


class PoolExhaustedError(VpnError):
    """No address left in the tunnel subnet, or the client ceiling is reached."""
    pass


class ServerNotInitializedError(VpnError):
    """The registry or server material is missing; run ``init`` first."""
    pass


class EntropyUnavailableError(VpnError):
    """The secure random source failed while generating key material."""
    pass


class PersistenceError(VpnError):
    """The registry or a derived file could not be read or written."""
    pass


class ReconciliationError(VpnError):
    """The running tunnel could not be brought in line with the registry."""
    pass

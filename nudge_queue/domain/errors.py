from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class StaleClaimError(DomainInvariantError):
    """Raised when a worker reports on a queue item it no longer owns."""


class StoreUnavailableError(DomainDependencyError):
    pass

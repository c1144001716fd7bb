from __future__ import annotations


class EstateJobsError(Exception):
    """Base error for estatejobs."""


class ProviderConfigError(EstateJobsError):
    """Missing or invalid AI job provider configuration."""


class QueueUnavailableError(EstateJobsError):
    """Broker unreachable or enqueue rejected."""


class EntityNotFoundError(EstateJobsError):
    """Domain entity referenced by a job no longer exists."""


class JobTimeoutError(EstateJobsError):
    """A job attempt ran past the configured per-attempt ceiling."""

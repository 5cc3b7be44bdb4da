"""
CrmFlow exception hierarchy.

    CrmFlowError (base)
    ├── ConfigError
    ├── StoreError
    ├── NotFoundError
    ├── MailError
    ├── ActionConfigError
    ├── ConditionError
    └── TemplateError
"""

from typing import Optional


class CrmFlowError(Exception):
    """Base class for all CrmFlow errors."""


class ConfigError(CrmFlowError):
    """Configuration is invalid or missing."""


class StoreError(CrmFlowError):
    """The data store could not be reached or a query failed.

    Raised out of batch drivers; the cron caller retries the whole invocation.
    """


class NotFoundError(CrmFlowError):
    """An automation, sequence or entity does not exist in the calling project."""


class MailError(CrmFlowError):
    """The mail collaborator failed to deliver a message.

    Args:
        message: Error description
        transient: True for rate limits, timeouts and 5xx responses. Transient
            failures leave the enrollment eligible for retry; permanent ones
            fail it.
        status_code: Provider HTTP status, when known
    """

    def __init__(self, message: str, transient: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class ActionConfigError(CrmFlowError):
    """An automation action payload is malformed."""


class ConditionError(CrmFlowError):
    """A condition tree is malformed."""


class TemplateError(CrmFlowError):
    """A subject/body template could not be rendered."""

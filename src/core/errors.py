"""Exception hierarchy for the ingestion and notification core."""

from __future__ import annotations


class CityscopeError(Exception):
    """Base class for all errors raised by the core."""


class FatalIngestError(CityscopeError):
    """The current source document cannot be ingested and is skipped."""


class ExtractionFailedError(FatalIngestError):
    """The extraction service produced nothing usable for the document."""


class NoGeometryError(FatalIngestError):
    """None of the document locations could be turned into a feature."""


class OutsideBoundariesError(FatalIngestError):
    """Every feature of the document lies outside the configured boundaries."""


class MessageIdCollisionError(CityscopeError):
    """A unique message id could not be allocated within the retry bound."""


class InvalidSubscriptionError(CityscopeError):
    """The push transport rejected a subscription as expired or unknown."""

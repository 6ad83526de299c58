"""Error taxonomy for neuroclear.

Service-boundary failures are converted into one of these at the call site.
Nothing else from a transport layer reaches the triage engine.
"""


class NeuroclearError(Exception):
    """Base class for neuroclear errors."""


class ConfigurationError(NeuroclearError):
    """Required configuration (API key, config file) is missing or invalid.

    Raised before any network attempt.
    """


class ClassificationFailure(NeuroclearError):
    """A batch classification call failed or returned unusable data."""


class EnrichmentFailure(NeuroclearError):
    """A single-record lookup failed."""

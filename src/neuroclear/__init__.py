"""neuroclear - AI-assisted process triage."""

__version__ = "0.1.0"

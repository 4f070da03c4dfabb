"""
Error types raised by the sampling core.

Only ConfigurationError stops a run before it starts. Everything else is
caught by the orchestrator, logged and the run moves on to the next note.
"""


class SampleBotError(Exception):
    """Base class for all SampleBot errors."""


class ConfigurationError(SampleBotError):
    """Invalid or missing settings (no output folder, bad note range...)."""


class CaptureStartError(SampleBotError):
    """Recording could not start: device unavailable or file not creatable."""


class ConversionError(SampleBotError):
    """A single input buffer could not be converted to the output format."""


class NormalizationError(SampleBotError):
    """A finished sample could not be read or rewritten."""

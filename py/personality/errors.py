"""Exceptions raised by the personality provider."""


class PersonalityError(Exception):
    """Base class for personality provider errors."""


class ConfigurationError(PersonalityError, ValueError):
    """A fatal configuration problem. Never retried."""


class InvalidModelFamily(ConfigurationError):
    """A model family other than ``nb`` or ``nmf`` was requested."""


class UnknownParameterSet(ConfigurationError):
    """The requested parameter set name is not defined."""


class InvalidTimeSegments(ConfigurationError):
    """The time segment table does not partition the time axis."""


class RecipeError(ConfigurationError):
    """A recipe references an unknown instruction or parameter."""

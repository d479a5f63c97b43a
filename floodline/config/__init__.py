from .core import Configuration, ConfigurationState  # noqa: F401

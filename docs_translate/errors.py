class TranslatorError(Exception):
    """Base class for errors raised by docs_translate."""


class ConfigurationError(TranslatorError):
    """Missing source directory, no target languages, missing credentials."""


class ModelClientError(TranslatorError):
    """The model provider could not produce a response."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out

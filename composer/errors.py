class ComposerError(Exception):
    """Base error. `message_key` selects the user-facing message."""

    message_key = "generation_failed"


class ConfigurationError(RuntimeError):
    pass


class DecodeError(ComposerError):
    message_key = "decode_failed"


class UnsupportedImageTypeError(DecodeError):
    message_key = "unsupported_type"


class FileTooLargeError(DecodeError):
    message_key = "file_too_large"


class ValidationError(ComposerError):
    message_key = "missing_images"


class GenerationServiceError(ComposerError):
    message_key = "generation_failed"


class NoImageInResponseError(GenerationServiceError):
    pass


class SessionNotFoundError(ComposerError):
    pass

"""
Domain exceptions for the AERS reporting system.

Programming errors (wrong argument types, unknown section names) still
raise builtin TypeError/ValueError. These classes mark failures that the
Session Controller turns into a well-defined, resumable state.
"""


class AersError(Exception):
    """Base class for recoverable AERS failures"""


class MalformedPatchError(AersError, ValueError):
    """
    A record patch failed shape or type validation.

    Raised before merge is attempted; the record stays unchanged.
    """


class CollaboratorError(AersError, RuntimeError):
    """Generation collaborator call failed (transport, empty or unparseable output)"""


class AttachmentReadError(AersError, OSError):
    """
    An attachment could not be read or encoded.

    Attributes:
        step: Human-readable name of the failing step
    """

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step

from typing import Optional


class ReplicationError(Exception):
    """ An exception class for slot replication """
    pass


class InvalidDegreeSequence(ReplicationError, ValueError):
    """Degree sequence, repetition factor and slot count do not fit together"""
    pass


class InvalidCursorState(ReplicationError):
    """The replication cursor was advanced before a traversal was started"""
    pass


class InvalidCiphertext(ReplicationError):
    """Structural check on an input ciphertext failed (debug mode only)"""
    pass


class BackendOperationFailed(ReplicationError):
    """
    Raised when an OpenFHE call fails during replication. The most common
        cause is a rotation by an offset that has no evaluation key. The
        OpenFHE exception is kept as __cause__.
    """

    def __init__(self, operation: str, offset: Optional[int] = None, message: str = ""):
        self.operation = operation
        self.offset = offset
        details = f"{operation} failed"
        if offset is not None:
            details += f" for rotation offset {offset}"
        if message:
            details += f": {message}"
        super().__init__(details)

"""
Exception hierarchy for the CDC connector.

Transient failures never surface as these exceptions unless retries are
exhausted; everything raised from here stops the source task.
"""


class CDCError(Exception):
    """Base exception for CDC errors."""
    pass


class ConfigurationError(CDCError, ValueError):
    """Invalid connector configuration."""
    pass


class ResumeNotPossibleError(CDCError):
    """Stored position has aged out of the server's retained history."""
    pass


class CursorOrderError(CDCError):
    """Attempt to move the resume cursor backwards or sideways."""
    pass


class CheckpointError(CDCError):
    """Error saving/loading checkpoint."""
    pass


class InvalidCheckpointError(CheckpointError):
    """Stored checkpoint row holds no usable position."""
    pass


class SnapshotError(CDCError):
    """A copy-existing worker failed; the whole snapshot is aborted."""
    pass


class StructuralError(CDCError):
    """Filter or schema output failed validation for a record."""
    pass

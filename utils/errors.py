"""Exception taxonomy for the intake pipeline.

Policy rejections (traversal, disallowed MIME, oversize entry, malware) are
never raised; they are recorded as skipped entries with a reason code.
"""


class IntakeError(Exception):
    """Base class for all intake pipeline failures."""


class ArchiveStructureError(IntakeError):
    """The archive container itself cannot be read; no partial result exists."""


class PathTraversalError(IntakeError):
    """A resolved path escapes the content store root."""


class AssetNotFoundError(IntakeError):
    """No stored asset exists for the requested id/name."""


class StorageError(IntakeError):
    """A filesystem operation in the content store failed or timed out."""

"""
Standard span attributes for objmigrate.

Attribute constants shared by every component so that spans emitted by the
runner, lock manager and stores can be correlated on the same keys.

Example:
    >>> from objmigrate.observability.attributes import ATTR_RUN_ID
    >>> with tracer.span("objmigrate.runner.batch", {ATTR_RUN_ID: run_id}):
    ...     pass
"""

# =============================================================================
# Run Attributes
# =============================================================================

ATTR_RUN_ID = "objmigrate.run.id"
"""Identifier of the migration run."""

ATTR_RUN_PHASE = "objmigrate.run.phase"
"""Phase of the migration run (discovery, copy, ...)."""

ATTR_RUN_STATUS = "objmigrate.run.status"
"""Status the run is transitioning to."""

ATTR_DRY_RUN = "objmigrate.run.dry_run"
"""Whether the run suppresses mutating side effects."""

ATTR_JOB_ID = "objmigrate.job.id"
"""Identifier of the dispatched background job."""

ATTR_COMMAND = "objmigrate.job.command"
"""Dispatched command in <namespace>/<action> form."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_BATCH_NUMBER = "objmigrate.batch.number"
"""1-based batch sequence number within a run."""

ATTR_BATCH_SIZE = "objmigrate.batch.size"
"""Number of objects in a batch."""

ATTR_PROCESSED_COUNT = "objmigrate.processed_count"
"""Objects processed so far in a run."""

# =============================================================================
# Object / Provider Attributes
# =============================================================================

ATTR_OBJECT_PATH = "objmigrate.object.path"
"""Provider-relative key of a stored object."""

ATTR_PREFIX = "objmigrate.listing.prefix"
"""Prefix of a listing request."""

ATTR_PAGE_SIZE = "objmigrate.listing.page_size"
"""Requested page size of a listing request."""

ATTR_PROVIDER_TYPE = "objmigrate.provider.type"
"""Provider type tag (local, s3, ...)."""

# =============================================================================
# Lock / Checkpoint Attributes
# =============================================================================

ATTR_LOCK_NAME = "objmigrate.lock.name"
"""Name of the migration lock."""

ATTR_LOCK_HOLDER = "objmigrate.lock.holder"
"""Identity of the lock holder (hostname:pid)."""

ATTR_LOCK_TIMEOUT = "objmigrate.lock.timeout"
"""Acquisition timeout in seconds."""

ATTR_CHECKPOINT_ID = "objmigrate.checkpoint.id"
"""Identifier of a checkpoint snapshot."""

# =============================================================================
# Duplicate Attributes
# =============================================================================

ATTR_DUPLICATE_ACTION = "objmigrate.duplicate.action"
"""Resolution chosen for a colliding object."""

ATTR_RECORD_ID = "objmigrate.record.id"
"""Catalogue record identifier."""


__all__ = [
    "ATTR_RUN_ID",
    "ATTR_RUN_PHASE",
    "ATTR_RUN_STATUS",
    "ATTR_DRY_RUN",
    "ATTR_JOB_ID",
    "ATTR_COMMAND",
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_PROCESSED_COUNT",
    "ATTR_OBJECT_PATH",
    "ATTR_PREFIX",
    "ATTR_PAGE_SIZE",
    "ATTR_PROVIDER_TYPE",
    "ATTR_LOCK_NAME",
    "ATTR_LOCK_HOLDER",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_CHECKPOINT_ID",
    "ATTR_DUPLICATE_ACTION",
    "ATTR_RECORD_ID",
]

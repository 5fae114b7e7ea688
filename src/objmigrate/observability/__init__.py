"""
Observability utilities for objmigrate.

Provides the composition-based tracer used by every component and the
standard span attribute names.

Example:
    >>> from objmigrate.observability import create_tracer
    >>>
    >>> class Sweeper:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from objmigrate.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_CHECKPOINT_ID,
    ATTR_COMMAND,
    ATTR_DRY_RUN,
    ATTR_DUPLICATE_ACTION,
    ATTR_JOB_ID,
    ATTR_LOCK_HOLDER,
    ATTR_LOCK_NAME,
    ATTR_LOCK_TIMEOUT,
    ATTR_OBJECT_PATH,
    ATTR_PAGE_SIZE,
    ATTR_PREFIX,
    ATTR_PROCESSED_COUNT,
    ATTR_PROVIDER_TYPE,
    ATTR_RECORD_ID,
    ATTR_RUN_ID,
    ATTR_RUN_PHASE,
    ATTR_RUN_STATUS,
)
from objmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_CHECKPOINT_ID",
    "ATTR_COMMAND",
    "ATTR_DRY_RUN",
    "ATTR_DUPLICATE_ACTION",
    "ATTR_JOB_ID",
    "ATTR_LOCK_HOLDER",
    "ATTR_LOCK_NAME",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_OBJECT_PATH",
    "ATTR_PAGE_SIZE",
    "ATTR_PREFIX",
    "ATTR_PROCESSED_COUNT",
    "ATTR_PROVIDER_TYPE",
    "ATTR_RECORD_ID",
    "ATTR_RUN_ID",
    "ATTR_RUN_PHASE",
    "ATTR_RUN_STATUS",
]

"""
Observability utilities for assetmigrate.

Provides the composition-based tracer used by every component, the
``traced`` decorator and the standard span attribute names.

Note:
    OpenTelemetry is an optional dependency (``pip install
    assetmigrate-py[telemetry]``). Everything here works without it.
"""

from assetmigrate.observability.attributes import (
    ATTR_BATCH_OFFSET,
    ATTR_BATCH_SIZE,
    ATTR_CHANGE_TYPE,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ENTRY_COUNT,
    ATTR_ERROR_CODE,
    ATTR_ERROR_TYPE,
    ATTR_ITEM_ATTEMPTS,
    ATTR_ITEM_CATEGORY,
    ATTR_ITEM_COUNT,
    ATTR_ITEM_ID,
    ATTR_ITEM_OUTCOME,
    ATTR_ITEMS_FAILED,
    ATTR_ITEMS_PROCESSED,
    ATTR_LOCK_ATTEMPTS,
    ATTR_LOCK_HOLDER,
    ATTR_LOCK_MODE,
    ATTR_LOCK_NAME,
    ATTR_LOCK_STATUS,
    ATTR_RUN_ID,
    ATTR_RUN_MODE,
    ATTR_RUN_PHASE,
    ATTR_RUN_STATUS,
    ATTR_SEQUENCE,
    ATTR_STORAGE_PATH,
    ATTR_STORAGE_PROVIDER,
    ATTR_TO_SEQUENCE,
)
from assetmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
    error_attributes,
)
from assetmigrate.observability.tracing import (
    OTEL_AVAILABLE,
    get_tracer,
    should_trace,
    traced,
)

__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
    "should_trace",
    "traced",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "error_attributes",
    "ATTR_RUN_ID",
    "ATTR_RUN_MODE",
    "ATTR_RUN_PHASE",
    "ATTR_RUN_STATUS",
    "ATTR_ITEM_ID",
    "ATTR_ITEM_CATEGORY",
    "ATTR_ITEM_OUTCOME",
    "ATTR_ITEM_COUNT",
    "ATTR_ITEM_ATTEMPTS",
    "ATTR_BATCH_OFFSET",
    "ATTR_BATCH_SIZE",
    "ATTR_ITEMS_PROCESSED",
    "ATTR_ITEMS_FAILED",
    "ATTR_SEQUENCE",
    "ATTR_TO_SEQUENCE",
    "ATTR_CHANGE_TYPE",
    "ATTR_ENTRY_COUNT",
    "ATTR_LOCK_NAME",
    "ATTR_LOCK_HOLDER",
    "ATTR_LOCK_MODE",
    "ATTR_LOCK_STATUS",
    "ATTR_LOCK_ATTEMPTS",
    "ATTR_STORAGE_PROVIDER",
    "ATTR_STORAGE_PATH",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_ERROR_TYPE",
    "ATTR_ERROR_CODE",
]

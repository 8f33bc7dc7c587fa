"""Pipeline engines.

- Sync engine: incremental mailbox sync with a per-user lock
- Extraction engine: FIFO fact extraction batches
- Pipeline: the facade used by the scheduler, HTTP API and CLI
"""

from mailfacts.engine.extraction import ExtractionBatchResult, ExtractionEngine
from mailfacts.engine.pipeline import Pipeline
from mailfacts.engine.sync import SyncEngine, SyncResult

__all__ = [
    "ExtractionBatchResult",
    "ExtractionEngine",
    "Pipeline",
    "SyncEngine",
    "SyncResult",
]

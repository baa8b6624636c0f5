"""Client-side ingestion pipeline."""

from plaidledger.orchestrators.fetch import fetch_with_retry
from plaidledger.orchestrators.ingestion import (
    IngestionOrchestrator,
    IngestionOutcome,
    IngestionState,
)
from plaidledger.orchestrators.status import StatusSlot

__all__ = [
    "IngestionOrchestrator",
    "IngestionOutcome",
    "IngestionState",
    "StatusSlot",
    "fetch_with_retry",
]

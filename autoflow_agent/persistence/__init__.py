"""Persistence layer: deployment records and feedback entries (aiosqlite).

Exports:
  RecordStore        async store for both tables; open() / close()
  DeploymentRecord   one row per idempotency key
  FeedbackEntry      one row per failed or unmatched request
"""

from autoflow_agent.persistence.records import (
    FEEDBACK_KINDS,
    DeploymentRecord,
    FeedbackEntry,
    RecordStore,
)

__all__ = [
    "RecordStore",
    "DeploymentRecord",
    "FeedbackEntry",
    "FEEDBACK_KINDS",
]

from cli_relay.memory.store import MemoryStore
from cli_relay.memory.workflow_store import AlertCounter, AlertCounterStore, WorkflowRow, WorkflowStore

__all__ = [
    "AlertCounter",
    "AlertCounterStore",
    "MemoryStore",
    "WorkflowRow",
    "WorkflowStore",
]

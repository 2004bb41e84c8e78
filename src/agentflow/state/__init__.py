from agentflow.state.locks import SessionLockRegistry
from agentflow.state.merge import reconcile_progress
from agentflow.state.store import ProgressStore, SessionDocuments

__all__ = ["ProgressStore", "SessionDocuments", "SessionLockRegistry", "reconcile_progress"]

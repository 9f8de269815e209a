from gateflow.state.sessions import SessionRegistry
from gateflow.state.store import StateStore, compute_checksum

__all__ = ["SessionRegistry", "StateStore", "compute_checksum"]

from governor.state.decisions import Decision, DecisionLog
from governor.state.governance import GovernanceState, GovernanceStore
from governor.state.scars import Scar, ScarStore
from governor.state.store import ProjectStore

__all__ = [
    "Decision",
    "DecisionLog",
    "GovernanceState",
    "GovernanceStore",
    "ProjectStore",
    "Scar",
    "ScarStore",
]

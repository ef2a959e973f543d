from chatgate.plan.artifacts import PlanArtifactStore
from chatgate.plan.gate import GateState, PlanGate, Transition

__all__ = ["GateState", "PlanArtifactStore", "PlanGate", "Transition"]

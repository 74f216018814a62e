"""Agent Control Plane - job orchestration and reconciliation engine.

Dispatches work to remote hosting agents, reconciles desired against observed
state, and applies agent results back onto domain records.
"""

__version__ = "0.1.0"

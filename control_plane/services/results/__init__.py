"""Job result application onto domain aggregates."""

from control_plane.services.results.applier import ResultApplier

__all__ = ["ResultApplier"]

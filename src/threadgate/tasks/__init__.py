"""ThreadGate background tasks."""

from threadgate.tasks.sweep import start_action_sweep, stop_action_sweep

__all__ = ["start_action_sweep", "stop_action_sweep"]

"""Autonomous control loop: scheduled health, balance and payout batch tasks."""

from mandate_rail.control.loop import AutonomousLoop, backoff_delay_ms
from mandate_rail.control.state import LoopState, load_state, save_state
from mandate_rail.control.tasks import ControlTasks, is_within_window_utc, make_batch_id, make_item_id

__all__ = [
    "AutonomousLoop",
    "ControlTasks",
    "LoopState",
    "backoff_delay_ms",
    "is_within_window_utc",
    "load_state",
    "make_batch_id",
    "make_item_id",
    "save_state",
]

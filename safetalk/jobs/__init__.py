"""
Background Jobs for SafeTalk.

- mediator_worker: runs queued mediator cycles and delivers pending pushes
"""

from .mediator_worker import (
    deliver_pending_pushes,
    process_pending_tasks,
    run_task,
    run_worker,
)

__all__ = [
    "deliver_pending_pushes",
    "process_pending_tasks",
    "run_task",
    "run_worker",
]

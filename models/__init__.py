"""ORM models exposed by the sync subsystem."""
from .queued_operation import QueuedOperationRecord
from .sync_receipt import SyncReceipt
from .target_rows import ExerciseDefRow, WorkoutRow, WorkoutTemplateRow

__all__ = [
    "ExerciseDefRow",
    "QueuedOperationRecord",
    "SyncReceipt",
    "WorkoutRow",
    "WorkoutTemplateRow",
]

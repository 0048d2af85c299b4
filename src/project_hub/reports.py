"""
Project progress calculations used by the progress endpoint.

All functions are pure; ``today`` can be injected for deterministic results.
"""

from datetime import date
from typing import Optional, Dict, Any

# Completion may trail or lead elapsed time by this many points and still be on track
TIMELINE_TOLERANCE = 10


def _to_date(value) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def days_left(end_date, today: Optional[date] = None) -> Optional[int]:
    """Days until ``end_date``; negative once it has passed, None when unset."""
    end = _to_date(end_date)
    if end is None:
        return None
    return (end - (today or date.today())).days


def timeline_progress(start_date, end_date, today: Optional[date] = None) -> int:
    """Percentage (0-100) of the scheduled window that has elapsed."""
    start = _to_date(start_date)
    end = _to_date(end_date)
    if start is None or end is None:
        return 0
    today = today or date.today()
    if today >= end:
        return 100
    if today <= start:
        return 0
    total = (end - start).days
    elapsed = (today - start).days
    return max(0, min(100, round(elapsed / total * 100)))


def completion_percentage(completed: int, total: int) -> int:
    if not total:
        return 0
    return round(completed / total * 100)


def timeline_status(completion: int, elapsed: int, remaining_days: Optional[int]) -> str:
    """Classify a project as ``ahead``, ``delayed`` or ``on_track``."""
    if remaining_days is not None and remaining_days < 0 and completion < 100:
        return "delayed"
    if completion + TIMELINE_TOLERANCE < elapsed:
        return "delayed"
    if completion > elapsed + TIMELINE_TOLERANCE:
        return "ahead"
    return "on_track"


def hours_summary(estimated: Optional[float], actual: Optional[float]) -> Dict[str, float]:
    estimated = float(estimated or 0)
    actual = float(actual or 0)
    return {
        "estimated": estimated,
        "actual": actual,
        "difference": actual - estimated,
    }


def build_progress_report(project: Dict[str, Any], stats: Dict[str, Any],
                          today: Optional[date] = None) -> Dict[str, Any]:
    """
    Combine a project row with its task statistics.

    Args:
        project: Project row (``id``, ``name``, ``start_date``, ``end_date``)
        stats: Output of ``ProjectDatabase.get_project_task_stats``
        today: Reference date, defaults to the current date
    """
    total = stats.get("total", 0)
    completed = stats.get("completed", 0)
    completion = completion_percentage(completed, total)
    elapsed = timeline_progress(project.get("start_date"), project.get("end_date"), today)
    remaining = days_left(project.get("end_date"), today)

    return {
        "project_id": project["id"],
        "project_name": project["name"],
        "completion_percentage": completion,
        "tasks_completed": completed,
        "tasks_total": total,
        "overdue_tasks": stats.get("overdue", 0),
        "timeline_progress": elapsed,
        "days_left": remaining,
        "timeline_status": timeline_status(completion, elapsed, remaining),
        "hours": hours_summary(stats.get("estimated_hours"), stats.get("actual_hours")),
    }

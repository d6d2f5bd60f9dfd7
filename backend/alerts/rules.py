"""
Built-in Alert Rules
Operational checks on logistics jobs.

Each rule looks at ONE job in isolation. Rules that need third-party
data (GPS verification) are not part of this set.

Field names follow the FileMaker layout, including its spelling
("time_arival").
"""

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Union

from loguru import logger

from core.models import Record
from .models import AlertRule, Severity, is_blank


JOB_DATE_FORMAT = "%m/%d/%Y"
TIME_FORMAT = "%H:%M:%S"


def _arrival_without_completion(job: Record) -> bool:
    return (
        not is_blank(job.get("time_arival"))
        and is_blank(job.get("time_complete"))
        and job.get("job_status") != "Completed"
    )


def _missing_truck(job: Record) -> bool:
    return job.get("job_status") == "Entered" and is_blank(job.get("_kf_trucks_id"))


def _truck_without_driver(job: Record) -> bool:
    return (
        job.get("job_status") == "Entered"
        and not is_blank(job.get("_kf_trucks_id"))
        and is_blank(job.get("_kf_driver_id"))
    )


def _attempted(job: Record) -> bool:
    return job.get("job_status") == "Attempted" or job.get("job_status_driver") == "Attempted"


def _rescheduled(job: Record) -> bool:
    return job.get("job_status") == "Re-scheduled"


def arrival_datetime(job: Record) -> Optional[datetime]:
    """Combine job_date (MM/DD/YYYY) and time_arival (HH:MM:SS); None if unparseable"""
    job_date = job.get("job_date")
    arrival = job.get("time_arival")
    if is_blank(job_date) or is_blank(arrival):
        return None
    try:
        day = datetime.strptime(str(job_date), JOB_DATE_FORMAT)
        at = datetime.strptime(str(arrival), TIME_FORMAT)
    except ValueError:
        return None
    return day.replace(hour=at.hour, minute=at.minute, second=at.second)


def long_in_progress(hours: float, now: Callable[[], datetime] = datetime.now) -> Callable[[Record], bool]:
    """Predicate: arrived more than `hours` ago and still not complete"""

    def predicate(job: Record) -> bool:
        if is_blank(job.get("time_arival")) or not is_blank(job.get("time_complete")):
            return False
        arrived = arrival_datetime(job)
        if arrived is None:
            return False
        return arrived < now() - timedelta(hours=hours)

    return predicate


def default_rules(in_progress_hours: float = 4.0,
                  now: Callable[[], datetime] = datetime.now) -> List[AlertRule]:
    """The standard job rules, in evaluation order"""
    hours_label = f"{in_progress_hours:g}"

    return [
        AlertRule(
            id="arrival-without-completion",
            name="Arrival Without Completion",
            severity=Severity.HIGH,
            predicate=_arrival_without_completion,
            message_template="Job {id} has arrival time but no completion time (Status: {job_status})",
        ),
        AlertRule(
            id="missing-truck-assignment",
            name="Missing Truck Assignment",
            severity=Severity.HIGH,
            predicate=_missing_truck,
            message_template="Job {id} is Entered but has no truck assigned",
        ),
        AlertRule(
            id="truck-without-driver",
            name="Truck Without Driver",
            severity=Severity.MEDIUM,
            predicate=_truck_without_driver,
            message_template="Job {id} has truck {_kf_trucks_id} but no driver assigned",
        ),
        AlertRule(
            id="long-in-progress",
            name="Job In Progress Too Long",
            severity=Severity.MEDIUM,
            predicate=long_in_progress(in_progress_hours, now),
            message_template=(
                f"Job {{id}} has been in progress for over {hours_label} hours "
                "(arrived at {time_arival})"
            ),
        ),
        AlertRule(
            id="attempted-status",
            name="Job Attempted But Not Completed",
            severity=Severity.HIGH,
            predicate=_attempted,
            message_template="Job {id} was attempted but not completed - requires follow-up",
        ),
        AlertRule(
            id="rescheduled-status",
            name="Job Rescheduled",
            severity=Severity.MEDIUM,
            predicate=_rescheduled,
            message_template="Job {id} has been rescheduled - verify new schedule",
        ),
    ]


def load_rules_file(path: Union[str, Path]) -> List[AlertRule]:
    """
    Load data-driven rules from JSON.

    Accepts either a list of rule objects or {"rules": [...]}.
    Raises OSError / ValueError on unreadable or invalid files.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("rules", [])
    if not isinstance(data, list):
        raise ValueError(f"Rules file {path} must contain a list of rules")

    rules = []
    for item in data:
        try:
            rules.append(AlertRule.from_dict(item))
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid rule in {path}: {item!r} ({e})") from e

    logger.info(f"Loaded {len(rules)} rules from {path}")
    return rules


def build_rules(in_progress_hours: float = 4.0, rules_file: Optional[str] = None) -> List[AlertRule]:
    """Default rules plus file rules; a file rule with a built-in id replaces it"""
    rules = default_rules(in_progress_hours)
    if not rules_file:
        return rules

    extra = load_rules_file(rules_file)
    overrides = {r.id for r in extra}
    return [r for r in rules if r.id not in overrides] + extra

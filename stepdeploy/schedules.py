"""
EventBridge Scheduler schedules that start the state machine.

Scheduler supports tags only on schedule groups, so ownership lives on the
group: a schedule is owned when its group carries the ownership tag. Deploy
creates the group with that tag when it does not exist yet.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from botocore.exceptions import ClientError

from . import arn as arnutil
from .cache import Cache
from .errors import ConfigurationError, OperationError, ScheduleNotFound, is_not_found
from .models import KNOWN_AFTER_DEPLOY
from .paginate import collect_pages
from .ports import SchedulerClient
from .reconcile import TriggerResource, TriggerService
from .render import drop_none
from .tags import APP_NAME, from_aws_tags, is_managed, ownership_tags, to_aws_tags

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "default"
MANAGED_GROUP = APP_NAME
STATE_ENABLED = "ENABLED"
STATE_DISABLED = "DISABLED"
LIST_PAGE_SIZE = 100
AT_FORMAT = "%Y-%m-%dT%H:%M:%S"


@dataclass
class Schedule(TriggerResource):
    name: str
    schedule_expression: str = ""
    group_name: str = MANAGED_GROUP
    schedule_expression_timezone: Optional[str] = None
    flexible_time_window: Dict[str, Any] = field(default_factory=lambda: {"Mode": "OFF"})
    description: Optional[str] = None
    state: Optional[str] = STATE_ENABLED
    target: Dict[str, Any] = field(default_factory=dict)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    kms_key_arn: Optional[str] = None
    action_after_completion: Optional[str] = None

    schedule_arn: Optional[str] = None
    creation_date: Optional[datetime] = None
    config_file_path: Optional[str] = None
    config_index: int = 0

    @classmethod
    def from_get_schedule(cls, output: Dict[str, Any]) -> "Schedule":
        return cls(
            name=output["Name"],
            schedule_expression=output.get("ScheduleExpression", ""),
            group_name=output.get("GroupName", DEFAULT_GROUP),
            schedule_expression_timezone=output.get("ScheduleExpressionTimezone"),
            flexible_time_window=dict(output.get("FlexibleTimeWindow") or {"Mode": "OFF"}),
            description=output.get("Description"),
            state=output.get("State"),
            target=dict(output.get("Target") or {}),
            start_date=output.get("StartDate"),
            end_date=output.get("EndDate"),
            kms_key_arn=output.get("KmsKeyArn"),
            action_after_completion=output.get("ActionAfterCompletion"),
            schedule_arn=output.get("Arn"),
            creation_date=output.get("CreationDate"),
        )

    def source(self) -> str:
        if self.schedule_arn:
            return self.schedule_arn
        if self.config_file_path:
            return f"trigger.schedule[{self.config_index}] in {self.config_file_path}"
        return self.name or KNOWN_AFTER_DEPLOY

    def bind_target(self, target_arn: str) -> None:
        self.target["Arn"] = target_arn

    def params(self) -> Dict[str, Any]:
        """Request body shared by create_schedule and update_schedule."""
        return drop_none({
            "Name": self.name,
            "GroupName": self.group_name,
            "ScheduleExpression": self.schedule_expression,
            "ScheduleExpressionTimezone": self.schedule_expression_timezone,
            "FlexibleTimeWindow": self.flexible_time_window,
            "Description": self.description,
            "State": self.state,
            "Target": self.target,
            "StartDate": self.start_date,
            "EndDate": self.end_date,
            "KmsKeyArn": self.kms_key_arn,
            "ActionAfterCompletion": self.action_after_completion,
        })

    def snapshot(self) -> Dict[str, Any]:
        return self.params()

    def has_passed(self, now: Optional[datetime] = None) -> bool:
        """
        True when the schedule can never fire again.

        That is when ``end_date`` is in the past, or when the expression is a
        one-time ``at(...)`` in the past, read in the schedule's timezone.
        """
        now = now or datetime.now(timezone.utc)
        if self.end_date is not None:
            end = self.end_date
            if end.tzinfo is None:
                end = end.replace(tzinfo=timezone.utc)
            if now > end:
                return True

        expression = self.schedule_expression or ""
        if not (expression.startswith("at(") and expression.endswith(")")):
            return False
        tz_name = self.schedule_expression_timezone or "UTC"
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            logger.warning(f"failed to load timezone `{tz_name}`: {e}")
            return False
        try:
            at = datetime.strptime(expression[3:-1], AT_FORMAT).replace(tzinfo=tz)
        except ValueError as e:
            logger.warning(f"failed to parse schedule expression `{expression}`: {e}")
            return False
        logger.debug(f"schedule `{self.name}` fires at {at.isoformat()}")
        return now > at


def filter_passed(schedules: Sequence[Schedule], now: Optional[datetime] = None) -> Tuple[List[Schedule], List[Schedule]]:
    """Split into (still active, passed)."""
    active, passed = [], []
    for s in schedules:
        (passed if s.has_passed(now) else active).append(s)
    return active, passed


class ScheduleService(TriggerService[Schedule]):
    """EventBridge Scheduler backend."""

    kind = "schedule"

    def __init__(self, client: SchedulerClient):
        self.client = client
        self._schedules = Cache()
        self._group_arns = Cache()
        self._group_tags = Cache()

    def search_related(self, target_arn: str, declared_names: Iterable[str] = ()) -> List[Schedule]:
        unqualified = arnutil.remove_qualifier(target_arn)
        declared = set(declared_names)
        try:
            summaries = collect_pages(self.client, "list_schedules", "Schedules", page_size=LIST_PAGE_SIZE)
        except ClientError as e:
            raise OperationError("list schedules", target_arn, e) from e

        related = []
        for summary in summaries:
            summary_target = (summary.get("Target") or {}).get("Arn", "")
            logger.debug(f"schedule `{summary['Name']}` targets `{summary_target}`")
            if summary_target in (target_arn, unqualified) or summary["Name"] in declared:
                related.append(summary)

        schedules = []
        seen = set()
        for summary in related:
            name = summary["Name"]
            group = summary.get("GroupName", DEFAULT_GROUP)
            if name in seen:
                continue
            if not self._group_is_managed(group):
                logger.warning(f"schedule `{group}/{name}` is related to the state machine but is not managed by {APP_NAME}, ignore it")
                continue
            try:
                schedules.append(self.get_schedule(name, group))
            except ScheduleNotFound:
                logger.debug(f"schedule `{group}/{name}` disappeared while listing")
                continue
            seen.add(name)
        return schedules

    def get_schedule(self, name: str, group_name: str = DEFAULT_GROUP) -> Schedule:
        key = (group_name, name)
        output = self._schedules.get(key)
        if output is None:
            try:
                output = self.client.get_schedule(Name=name, GroupName=group_name)
            except ClientError as e:
                if is_not_found(e):
                    raise ScheduleNotFound(f"schedule `{group_name}/{name}` does not exist") from e
                raise OperationError("get schedule", f"{group_name}/{name}", e) from e
            self._schedules.set(key, output)
        return Schedule.from_get_schedule(output)

    def _group_arn(self, group_name: str) -> Optional[str]:
        def load():
            try:
                groups = collect_pages(self.client, "list_schedule_groups", "ScheduleGroups")
            except ClientError as e:
                raise OperationError("list schedule groups", group_name, e) from e
            return {g["Name"]: g["Arn"] for g in groups}
        return self._group_arns.get_or_load("groups", load).get(group_name)

    def _group_is_managed(self, group_name: str) -> bool:
        group_arn = self._group_arn(group_name)
        if group_arn is None:
            return False

        def load_tags():
            try:
                return from_aws_tags(self.client.list_tags_for_resource(ResourceArn=group_arn).get("Tags"))
            except ClientError as e:
                raise OperationError("list tags", group_arn, e) from e
        return is_managed(self._group_tags.get_or_load(group_arn, load_tags))

    def _exists_unowned(self, schedule: Schedule) -> bool:
        group = schedule.group_name
        if self._group_arn(group) is not None and not self._group_is_managed(group):
            logger.warning(f"schedule group `{group}` is not managed by {APP_NAME}")
            return True
        try:
            self.get_schedule(schedule.name, group)
        except ScheduleNotFound:
            return False
        return True

    def _ensure_group(self, group_name: str) -> None:
        """Create the schedule group with the ownership tag, or re-apply the tag."""
        tags = to_aws_tags(ownership_tags())
        group_arn = self._group_arn(group_name)
        try:
            if group_arn is None:
                logger.info(f"creating schedule group: {group_name}")
                self.client.create_schedule_group(Name=group_name, Tags=tags)
                self._group_arns.clear()
            elif self._group_is_managed(group_name):
                self.client.tag_resource(ResourceArn=group_arn, Tags=tags)
                self._group_tags.invalidate(group_arn)
            else:
                raise ConfigurationError(f"schedule group `{group_name}` is not managed by {APP_NAME}")
        except ClientError as e:
            raise OperationError("write schedule group", group_name, e) from e

    def _put(self, schedule: Schedule, current: Optional[Schedule]) -> int:
        self._ensure_group(schedule.group_name)
        try:
            if current is None:
                output = self.client.create_schedule(**schedule.params())
            else:
                output = self.client.update_schedule(**schedule.params())
        except ClientError as e:
            action = "create schedule" if current is None else "update schedule"
            raise OperationError(action, schedule.name, e) from e
        schedule.schedule_arn = output.get("ScheduleArn")
        self._schedules.invalidate((schedule.group_name, schedule.name))
        return 0

    def _delete(self, schedule: Schedule) -> None:
        try:
            self.client.delete_schedule(Name=schedule.name, GroupName=schedule.group_name)
        except ClientError as e:
            raise OperationError("delete schedule", schedule.name, e) from e
        self._schedules.invalidate((schedule.group_name, schedule.name))

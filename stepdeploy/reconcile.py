"""
Trigger reconciliation shared by EventBridge rules and schedules.

Live triggers are matched to declared ones by name. A plan splits them into
delete, change and add sets; backends implement the remote calls.
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Sequence, Tuple, TypeVar

from . import render
from .models import KNOWN_AFTER_DEPLOY

logger = logging.getLogger(__name__)

ACTION_ADD = "add"
ACTION_CHANGE = "change"
ACTION_UNCHANGED = "unchanged"
ACTION_SKIPPED = "skipped"


class TriggerResource(ABC):
    """A rule or schedule bound to the state machine by its target ARN."""

    # Fields an operator may change out-of-band; copied from live state before writes
    MUTABLE_FIELDS: Tuple[str, ...] = ("state",)

    name: str
    state: Optional[str]

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Configuration in the shape used for diffs."""
        pass

    @abstractmethod
    def source(self) -> str:
        """Where this resource lives: its ARN, config file or name."""
        pass

    @abstractmethod
    def bind_target(self, target_arn: str) -> None:
        pass


T = TypeVar("T", bound=TriggerResource)


@dataclass
class Change(Generic[T]):
    before: T
    after: T


@dataclass
class Plan(Generic[T]):
    delete: List[T] = field(default_factory=list)
    change: List[Change] = field(default_factory=list)
    add: List[T] = field(default_factory=list)
    unchanged: List[Change] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.delete or self.change or self.add)


def plan(current: Sequence[T], desired: Sequence[T],
         key: Callable[[T], str] = lambda r: r.name,
         same: Optional[Callable[[T, T], bool]] = None) -> Plan:
    """
    Split ``current`` and ``desired`` by name.

    Names only in ``current`` are deleted, names only in ``desired`` are added
    and names in both are changed, unless ``same`` says the pair is identical.
    Each set keeps the order of the list it came from.
    """
    if same is None:
        same = lambda a, b: a.snapshot() == b.snapshot()
    desired_keys = {key(r) for r in desired}
    current_by_key = {}
    result = Plan()
    for r in current:
        current_by_key.setdefault(key(r), r)
        if key(r) not in desired_keys:
            result.delete.append(r)
    for r in desired:
        before = current_by_key.get(key(r))
        if before is None:
            result.add.append(r)
        elif same(before, r):
            result.unchanged.append(Change(before, r))
        else:
            result.change.append(Change(before, r))
    return result


@dataclass
class Outcome:
    name: str
    action: str
    failed_target_count: int = 0


@dataclass
class DeployResult:
    outcomes: List[Outcome] = field(default_factory=list)

    @property
    def failed_target_count(self) -> int:
        return sum(o.failed_target_count for o in self.outcomes)


def unique(names: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for name in names:
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


class TriggerService(ABC, Generic[T]):
    """Reconciliation engine for one kind of trigger."""

    kind = "trigger"

    @abstractmethod
    def search_related(self, target_arn: str, declared_names: Iterable[str] = ()) -> List[T]:
        """
        Find owned triggers targeting ``target_arn`` (or its unqualified form).

        Args:
            target_arn: Qualified state machine ARN
            declared_names: Names from the configuration

        Returns:
            Owned triggers; unowned matches are logged and left out
        """
        pass

    @abstractmethod
    def _put(self, desired: T, current: Optional[T]) -> int:
        """Upsert one trigger. Returns the number of targets that failed to write."""
        pass

    @abstractmethod
    def _delete(self, resource: T) -> None:
        pass

    def _exists_unowned(self, resource: T) -> bool:
        return False

    def sync_state(self, desired: Sequence[T], current: Sequence[T]) -> None:
        """Copy the out-of-band mutable fields of live triggers onto the desired ones."""
        by_name = {c.name: c for c in current}
        for d in desired:
            c = by_name.get(d.name)
            if c is None:
                continue
            for attr in d.MUTABLE_FIELDS:
                setattr(d, attr, copy.deepcopy(getattr(c, attr)))

    def bind(self, desired: Sequence[T], target_arn: str) -> None:
        for d in desired:
            d.bind_target(target_arn)

    def diff(self, current: Sequence[T], desired: Sequence[T], unified: bool = True,
             color: bool = True) -> str:
        """Render deletes, then changes, then adds. Identical pairs render nothing."""
        p = plan(current, desired)
        chunks = []
        for r in p.delete:
            chunks.append(render.json_diff(r.snapshot(), None, r.source(), KNOWN_AFTER_DEPLOY,
                                           unified=unified, color=color))
        for c in p.change:
            chunks.append(render.json_diff(c.before.snapshot(), c.after.snapshot(),
                                           c.before.source(), c.after.source(),
                                           unified=unified, color=color))
        for r in p.add:
            chunks.append(render.json_diff(None, r.snapshot(), KNOWN_AFTER_DEPLOY, r.source(),
                                           unified=unified, color=color))
        return "".join(chunk + "\n" for chunk in chunks if chunk)

    def deploy(self, current: Sequence[T], desired: Sequence[T]) -> DeployResult:
        """
        Write every desired trigger; changes first, then additions.

        Target-write failures are counted in the result rather than raised.
        """
        p = plan(current, desired)
        result = DeployResult()
        for c in p.unchanged:
            logger.debug(f"{self.kind} `{c.after.name}` is up to date")
            result.outcomes.append(Outcome(c.after.name, ACTION_UNCHANGED))
        for c in p.change:
            logger.info(f"updating {self.kind}: {c.before.source()}")
            failed = self._put(c.after, c.before)
            result.outcomes.append(Outcome(c.after.name, ACTION_CHANGE, failed))
        for r in p.add:
            if self._exists_unowned(r):
                logger.warning(f"{self.kind} `{r.name}` exists and is not managed by stepdeploy, skip")
                result.outcomes.append(Outcome(r.name, ACTION_SKIPPED))
                continue
            logger.info(f"creating {self.kind}: {r.name}")
            failed = self._put(r, None)
            result.outcomes.append(Outcome(r.name, ACTION_ADD, failed))
        return result

    def delete(self, resources: Sequence[T]) -> None:
        """Delete each trigger; the first failure is raised."""
        for r in resources:
            logger.info(f"deleting {self.kind}: {r.source()}")
            self._delete(r)

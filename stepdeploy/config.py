"""
Configuration file loading.

The file is YAML (JSON works too). ``${VAR}`` and ``${VAR:-default}`` are
expanded from the environment before parsing.
"""

import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .models import TYPE_EXPRESS, TYPE_STANDARD, StateMachine
from .rules import DEFAULT_EVENT_BUS, EventBridgeRule, normalize_event_pattern
from .schedules import MANAGED_GROUP, Schedule
from .statemachine import DEFAULT_ALIAS
from .tags import merge_tags

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "stepdeploy.yaml"
LOG_LEVELS = ("ALL", "ERROR", "FATAL", "OFF")
TRIGGER_STATES = ("ENABLED", "DISABLED")

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def expand_env(text: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Replace ``${VAR}`` and ``${VAR:-default}`` references.

    Raises:
        ConfigurationError: a variable without default is unset
    """
    env = os.environ if environ is None else environ

    def replace(match: "re.Match[str]") -> str:
        name, default = match.group(1), match.group(2)
        value = env.get(name)
        if value is not None:
            return value
        if default is not None:
            return default
        raise ConfigurationError(f"environment variable `{name}` is not set")

    return _ENV_REF.sub(replace, text)


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LogDestination(_Model):
    log_group: str


class LoggingConfig(_Model):
    level: str = "OFF"
    include_execution_data: bool = False
    destination: Optional[LogDestination] = None

    @field_validator("level", mode="before")
    @classmethod
    def check_level(cls, v: Any) -> str:
        # YAML 1.1 reads a bare OFF as false
        if v is False:
            v = "OFF"
        if not isinstance(v, str):
            raise ValueError("level must be a string")
        v = v.upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"level must be one of {', '.join(LOG_LEVELS)}")
        return v

    @model_validator(mode="after")
    def check_destination(self) -> "LoggingConfig":
        if self.level != "OFF" and self.destination is None:
            raise ValueError(f"logging level {self.level} requires a destination")
        return self


class TracingConfig(_Model):
    enabled: bool = False


class StateMachineConfig(_Model):
    name: str
    role_arn: str
    definition: str
    type: str = TYPE_STANDARD
    logging: Optional[LoggingConfig] = None
    tracing: Optional[TracingConfig] = None
    version_description: Optional[str] = None

    @field_validator("type")
    @classmethod
    def check_type(cls, v: str) -> str:
        v = v.upper()
        if v not in (TYPE_STANDARD, TYPE_EXPRESS):
            raise ValueError(f"type must be {TYPE_STANDARD} or {TYPE_EXPRESS}")
        return v


def _check_state(v: str) -> str:
    v = v.upper()
    if v not in TRIGGER_STATES:
        raise ValueError(f"state must be one of {', '.join(TRIGGER_STATES)}")
    return v


class RuleConfig(_Model):
    name: str
    schedule_expression: Optional[str] = None
    event_pattern: Optional[Union[str, Dict[str, Any]]] = None
    description: Optional[str] = None
    event_bus_name: str = DEFAULT_EVENT_BUS
    state: str = "ENABLED"
    role_arn: Optional[str] = None
    target_id: Optional[str] = None
    input: Optional[Union[str, Dict[str, Any]]] = None

    @field_validator("state")
    @classmethod
    def check_state(cls, v: str) -> str:
        return _check_state(v)

    @model_validator(mode="after")
    def check_expression(self) -> "RuleConfig":
        if bool(self.schedule_expression) == bool(self.event_pattern):
            raise ValueError(f"rule `{self.name}` needs exactly one of schedule_expression or event_pattern")
        return self


class ScheduleConfig(_Model):
    name: str
    schedule_expression: str
    group_name: str = MANAGED_GROUP
    schedule_expression_timezone: Optional[str] = None
    flexible_time_window: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    state: str = "ENABLED"
    role_arn: Optional[str] = None
    input: Optional[Union[str, Dict[str, Any]]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    kms_key_arn: Optional[str] = None
    action_after_completion: Optional[str] = None

    @field_validator("state")
    @classmethod
    def check_state(cls, v: str) -> str:
        return _check_state(v)


class TriggerConfig(_Model):
    event: List[RuleConfig] = []
    schedule: List[ScheduleConfig] = []


class Config(_Model):
    state_machine: StateMachineConfig
    aws_region: Optional[str] = None
    alias: str = DEFAULT_ALIAS
    tags: Dict[str, str] = {}
    trigger: TriggerConfig = TriggerConfig()

    # Set by load_config; not part of the file
    config_path: Optional[str] = None

    @property
    def config_dir(self) -> Path:
        if self.config_path:
            return Path(self.config_path).resolve().parent
        return Path.cwd()

    def definition_path(self) -> Path:
        path = Path(self.state_machine.definition)
        if not path.is_absolute():
            path = self.config_dir / path
        return path

    def load_definition(self) -> str:
        """Read the definition file and render it as indented JSON."""
        path = self.definition_path()
        try:
            text = path.read_text()
        except OSError as e:
            raise ConfigurationError(f"can not read definition {path}: {e}") from e
        try:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(text)
            else:
                data = json.loads(text)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"can not parse definition {path}: {e}") from e
        return json.dumps(data, indent=2, ensure_ascii=False)

    def new_state_machine(self, resolve_log_group: Optional[Callable[[str], str]] = None) -> StateMachine:
        """
        Build the desired state machine.

        Args:
            resolve_log_group: Maps a log group name to its ARN; required when
                a logging destination is configured
        """
        sm = self.state_machine
        logging_configuration: Dict[str, Any] = {"level": "OFF", "includeExecutionData": False}
        if sm.logging is not None:
            logging_configuration = {
                "level": sm.logging.level,
                "includeExecutionData": sm.logging.include_execution_data,
            }
            if sm.logging.destination is not None:
                if resolve_log_group is None:
                    raise ConfigurationError("logging destination configured but no log group resolver given")
                log_group_arn = resolve_log_group(sm.logging.destination.log_group)
                logging_configuration["destinations"] = [
                    {"cloudWatchLogsLogGroup": {"logGroupArn": log_group_arn}},
                ]
        tracing_configuration = None
        if sm.tracing is not None:
            tracing_configuration = {"enabled": sm.tracing.enabled}

        return StateMachine(
            name=sm.name,
            definition=self.load_definition(),
            role_arn=sm.role_arn,
            type=sm.type,
            logging_configuration=logging_configuration,
            tracing_configuration=tracing_configuration,
            tags=merge_tags({}, self.tags),
            version_description=sm.version_description,
            config_file_path=self.config_path,
            definition_path=str(self.definition_path()),
        )

    def new_rules(self) -> List[EventBridgeRule]:
        rules = []
        for r in self.trigger.event:
            target: Dict[str, Any] = {}
            if r.target_id:
                target["Id"] = r.target_id
            if r.role_arn:
                target["RoleArn"] = r.role_arn
            if r.input is not None:
                target["Input"] = _input_text(r.input)
            rules.append(EventBridgeRule(
                name=r.name,
                schedule_expression=r.schedule_expression,
                event_pattern=normalize_event_pattern(r.event_pattern),
                description=r.description,
                event_bus_name=r.event_bus_name,
                state=r.state,
                tags=merge_tags({}, self.tags),
                target=target,
                config_file_path=self.config_path,
            ))
        return rules

    def new_schedules(self) -> List[Schedule]:
        schedules = []
        for i, s in enumerate(self.trigger.schedule):
            target: Dict[str, Any] = {}
            if s.role_arn:
                target["RoleArn"] = s.role_arn
            if s.input is not None:
                target["Input"] = _input_text(s.input)
            schedule = Schedule(
                name=s.name,
                schedule_expression=s.schedule_expression,
                group_name=s.group_name,
                schedule_expression_timezone=s.schedule_expression_timezone,
                description=s.description,
                state=s.state,
                target=target,
                start_date=s.start_date,
                end_date=s.end_date,
                kms_key_arn=s.kms_key_arn,
                action_after_completion=s.action_after_completion,
                config_file_path=self.config_path,
                config_index=i,
            )
            if s.flexible_time_window is not None:
                schedule.flexible_time_window = dict(s.flexible_time_window)
            schedules.append(schedule)
        return schedules


def _input_text(value: Union[str, Dict[str, Any]]) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def load_config(path: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load and validate a configuration file.

    Raises:
        ConfigurationError: the file is missing, malformed or invalid
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"can not read config {path}: {e}") from e
    text = expand_env(text, environ)
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"can not parse config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"config {path} must be a mapping")
    data.pop("config_path", None)
    try:
        cfg = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid config {path}: {e}") from e
    cfg.config_path = str(path)
    logger.debug(f"loaded config {path}")
    return cfg

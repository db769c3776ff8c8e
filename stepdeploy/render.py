"""
Presentation helpers: JSON snapshots, text diffs and version listings.
"""

import difflib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import click
from rich.console import Console
from rich.table import Table

from .models import KNOWN_AFTER_DEPLOY, RollbackResult, StateMachine, VersionListItem

FORMAT_TABLE = "table"
FORMAT_JSON = "json"
FORMAT_TSV = "tsv"
VERSION_FORMATS = (FORMAT_TABLE, FORMAT_JSON, FORMAT_TSV)


def drop_none(value: Any) -> Any:
    """Recursively remove None values and empty containers from dicts."""
    if isinstance(value, dict):
        cleaned = {}
        for k, v in value.items():
            v = drop_none(v)
            if v is None or v == {} or v == []:
                continue
            cleaned[k] = v
        return cleaned
    if isinstance(value, list):
        return [drop_none(v) for v in value]
    return value


def _default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def to_json(value: Any) -> str:
    """Indented JSON with None values removed; ``null`` for None itself."""
    if value is None:
        return "null"
    return json.dumps(drop_none(value), indent=2, ensure_ascii=False, default=_default)


def _colorize(line: str) -> str:
    if line.startswith("---") or line.startswith("+++"):
        return click.style(line, bold=True)
    if line.startswith("@@"):
        return click.style(line, fg="cyan")
    if line.startswith("-"):
        return click.style(line, fg="red")
    if line.startswith("+"):
        return click.style(line, fg="green")
    return line


def json_diff(before: Any, after: Any, from_uri: str, to_uri: str,
              unified: bool = True, color: bool = True) -> str:
    """
    Diff the JSON renderings of two snapshots.

    Args:
        before: Snapshot before the change, None when it does not exist yet
        after: Snapshot after the change, None when it is deleted
        from_uri: Label for ``before``
        to_uri: Label for ``after``
        unified: Unified diff with context; otherwise the whole document
            with changed lines marked
        color: Style lines for a terminal

    Returns:
        The diff, or an empty string when both render identically
    """
    a = to_json(before)
    b = to_json(after)
    if a == b:
        return ""
    a_lines = a.splitlines()
    b_lines = b.splitlines()
    if unified:
        lines = list(difflib.unified_diff(a_lines, b_lines, fromfile=from_uri, tofile=to_uri,
                                          n=3, lineterm=""))
    else:
        lines = [f"--- {from_uri}", f"+++ {to_uri}"]
        for line in difflib.ndiff(a_lines, b_lines):
            if line.startswith("? "):
                continue
            lines.append(line[0] + line[2:])
    if color:
        lines = [_colorize(line) for line in lines]
    return "\n".join(lines)


def version_rows(versions: List[VersionListItem]) -> List[List[str]]:
    rows = []
    for v in versions:
        rows.append([
            str(v.version),
            ",".join(v.aliases),
            v.creation_date.isoformat() if v.creation_date else "",
            v.revision_id,
            v.description,
        ])
    return rows


VERSION_HEADERS = ["Version", "Aliases", "Created", "Revision", "Description"]


def format_versions(versions: List[VersionListItem], fmt: str = FORMAT_TABLE,
                    console: Optional[Console] = None) -> Optional[str]:
    """
    Render a version listing.

    ``table`` prints through rich and returns None; ``json`` and ``tsv``
    return the text for the caller to print.
    """
    if fmt == FORMAT_JSON:
        return json.dumps([v.to_dict() for v in versions], indent=2, ensure_ascii=False)
    if fmt == FORMAT_TSV:
        lines = ["\t".join(VERSION_HEADERS)]
        lines.extend("\t".join(row) for row in version_rows(versions))
        return "\n".join(lines)
    if fmt != FORMAT_TABLE:
        raise ValueError(f"unknown format: {fmt}")

    table = Table(show_header=True, header_style="bold")
    for header in VERSION_HEADERS:
        table.add_column(header)
    for row in version_rows(versions):
        table.add_row(*row)
    (console or Console()).print(table)
    return None


def _definition_document(definition: str) -> Any:
    try:
        return json.loads(definition) if definition else None
    except ValueError:
        return definition


def state_machine_diff(current: Optional[StateMachine], desired: Optional[StateMachine],
                       unified: bool = True, color: bool = True) -> str:
    """Diff configuration and definition of two state machines; either may be None."""
    from_uri = current.source() if current else KNOWN_AFTER_DEPLOY
    to_uri = desired.source() if desired else KNOWN_AFTER_DEPLOY
    chunks = [json_diff(
        current.configuration() if current else None,
        desired.configuration() if desired else None,
        from_uri, to_uri, unified=unified, color=color,
    )]
    from_uri = current.definition_source() if current else KNOWN_AFTER_DEPLOY
    to_uri = desired.definition_source() if desired else KNOWN_AFTER_DEPLOY
    chunks.append(json_diff(
        _definition_document(current.definition) if current else None,
        _definition_document(desired.definition) if desired else None,
        from_uri, to_uri, unified=unified, color=color,
    ))
    return "\n".join(chunk for chunk in chunks if chunk)


def rollback_diff(result: RollbackResult, unified: bool = True, color: bool = True) -> str:
    """Diff of the alias routing, followed by the version to delete if any."""
    chunks = [json_diff(result.routing_before(), result.routing_after(),
                        result.alias_arn, result.alias_arn, unified=unified, color=color)]
    if result.delete_version:
        chunks.append(json_diff({"StateMachineVersionArn": result.from_version_arn}, None,
                                result.from_version_arn, KNOWN_AFTER_DEPLOY,
                                unified=unified, color=color))
    return "\n".join(chunk for chunk in chunks if chunk)


def format_status(status: Dict[str, Any]) -> str:
    """Human readable rendering of the status document."""
    lines = ["[State Machine]"]
    sm = status["state_machine"]
    lines.append(f"- Name: {sm['name']}")
    lines.append(f"  Status: {sm['status']}")
    lines.append(f"  CurrentVersion: {sm['current_version']}")
    lines.append(f"  CreatedAt: {sm['created_at']}")
    lines.append(f"  Arn: {sm['arn']}")
    lines.append("")

    sections = (
        ("[EventBridge]", status.get("event_bridge", []), [
            ("Status", "status"), ("RuleArn", "rule_arn"),
            ("ScheduleExpression", "schedule_expression"), ("EventPattern", "event_pattern"),
            ("Target", "target"),
        ], "rule_name"),
        ("[EventBridge Scheduler]", status.get("event_bridge_scheduler", []), [
            ("Status", "status"), ("ScheduleArn", "schedule_arn"),
            ("ScheduleExpression", "schedule_expression"),
            ("ScheduleExpressionTimezone", "schedule_expression_timezone"),
            ("Target", "target"),
        ], "schedule_name"),
    )
    for title, items, fields, name_key in sections:
        if not items:
            continue
        lines.append(title)
        for item in items:
            lines.append(f"- Name: {item[name_key]}")
            for label, key in fields:
                if item.get(key):
                    lines.append(f"  {label}: {item[key]}")
            lines.append("")
    return "\n".join(lines)

"""
Tagging utilities for the ownership convention shared by every managed resource.
"""

from typing import Dict, Iterable, List, Mapping, Optional

APP_NAME = "stepdeploy"
TAG_MANAGED_BY = "ManagedBy"


def ownership_tags() -> Dict[str, str]:
    """Tags that mark a resource as managed by this tool."""
    return {TAG_MANAGED_BY: APP_NAME}


def merge_tags(tags: Mapping[str, str], extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """
    Merge ``extra`` into ``tags`` by key.

    Existing keys keep their position and take the new value; new keys are
    appended in the order ``extra`` yields them.

    Args:
        tags: Current tags
        extra: Tags to merge in

    Returns:
        A new merged tag dictionary
    """
    merged = dict(tags)
    if extra:
        for key, value in extra.items():
            merged[key] = value
    return merged


def is_managed(tags: Optional[Mapping[str, str]]) -> bool:
    """
    Check if a resource belongs to this tool based on its tags.

    Args:
        tags: Resource tags

    Returns:
        True if the resource carries the ownership tag, False otherwise
    """
    if not tags:
        return False
    return tags.get(TAG_MANAGED_BY) == APP_NAME


def parse_user_tags(pairs: Iterable[str]) -> Dict[str, str]:
    """
    Parse ``--tag KEY=VALUE`` options into a tag dictionary.

    Later pairs win on duplicate keys. The ownership tag is reserved.

    Raises:
        ValueError: a pair is malformed or sets the ownership tag
    """
    parsed: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not key or not value:
            raise ValueError(f"Invalid tag format: `{pair}`, want KEY=VALUE")
        if key == TAG_MANAGED_BY:
            raise ValueError(f"tag `{TAG_MANAGED_BY}` is reserved for {APP_NAME}")
        parsed[key] = value
    return parsed


# Step Functions spells tag fields in lower case, EventBridge and Scheduler
# capitalise them.

def to_sfn_tags(tags: Mapping[str, str]) -> List[Dict[str, str]]:
    return [{"key": k, "value": v} for k, v in tags.items()]


def from_sfn_tags(tags: Optional[Iterable[Mapping[str, str]]]) -> Dict[str, str]:
    return {t["key"]: t.get("value", "") for t in tags or []}


def to_aws_tags(tags: Mapping[str, str]) -> List[Dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def from_aws_tags(tags: Optional[Iterable[Mapping[str, str]]]) -> Dict[str, str]:
    return {t["Key"]: t.get("Value", "") for t in tags or []}

"""
Qualified ARN helpers.

A state machine ARN has the form::

    arn:aws:states:<region>:<account>:stateMachine:<name>

Appending ``:<alias>`` or ``:<version>`` qualifies it.
"""

from typing import Optional

# arn, partition, service, region, account, resource type, name
_UNQUALIFIED_PARTS = 7


def add_qualifier(arn: str, qualifier: Optional[str]) -> str:
    """Qualify an unqualified ARN with an alias name or version number."""
    if not qualifier:
        return arn
    return f"{arn}:{qualifier}"


def remove_qualifier(arn: str) -> str:
    """Strip an alias or version qualifier, if any."""
    parts = arn.split(":")
    if len(parts) <= _UNQUALIFIED_PARTS:
        return arn
    return ":".join(parts[:_UNQUALIFIED_PARTS])


def qualifier_of(arn: str) -> Optional[str]:
    parts = arn.split(":")
    if len(parts) <= _UNQUALIFIED_PARTS:
        return None
    return parts[-1]


def qualify(arn: str, qualifier: Optional[str]) -> str:
    """Replace whatever qualifier ``arn`` carries with ``qualifier``."""
    return add_qualifier(remove_qualifier(arn), qualifier)


def is_version_qualifier(qualifier: str) -> bool:
    return qualifier.isdigit()


def parse_version(version_arn: str) -> int:
    """
    Extract the version number from a version-qualified state machine ARN.

    Raises:
        ValueError: if the ARN is not a version-qualified state machine ARN
    """
    parts = version_arn.split(":")
    if len(parts) != _UNQUALIFIED_PARTS + 1 or parts[0] != "arn":
        raise ValueError(f"invalid version arn: {version_arn}")
    if parts[5] != "stateMachine":
        raise ValueError(f"`{version_arn}` is not a state machine version arn")
    suffix = parts[-1]
    if not suffix.isdigit():
        raise ValueError(f"`{version_arn}` has no numeric version suffix")
    return int(suffix)

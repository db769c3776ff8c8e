"""
boto3 client construction.
"""

from dataclasses import dataclass
from typing import Any, Optional
import logging

import boto3

logger = logging.getLogger(__name__)


@dataclass
class AWSClients:
    """boto3 clients for every control plane stepdeploy talks to."""
    sfn: Any
    events: Any
    scheduler: Any
    logs: Any


def new_clients(region: Optional[str] = None, profile: Optional[str] = None) -> AWSClients:
    """
    Build clients from the default credential chain.

    Args:
        region: AWS region; falls back to the environment/profile default
        profile: Optional named profile

    Returns:
        AWSClients bound to one session
    """
    session = boto3.session.Session(region_name=region or None, profile_name=profile or None)
    logger.debug(f"using AWS region {session.region_name}")
    return AWSClients(
        sfn=session.client("stepfunctions"),
        events=session.client("events"),
        scheduler=session.client("scheduler"),
        logs=session.client("logs"),
    )

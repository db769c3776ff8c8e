"""
stepdeploy - Deployment tool for AWS Step Functions state machines.

This package publishes state machine versions behind a routed alias, rolls
them back, prunes old versions and keeps the EventBridge rules and schedules
that trigger the state machine in sync with a declarative configuration.
"""

__version__ = "0.1.0"

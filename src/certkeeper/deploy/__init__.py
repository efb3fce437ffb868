"""Deployment of committed certificates to their configured targets.

Usage::

    from certkeeper.deploy import DeploymentPipeline

    pipeline = DeploymentPipeline(store, settings, events)
    report = pipeline.run(fingerprint)
"""

from certkeeper.deploy.base import ActionAttempt, ActionContext, DeployAction
from certkeeper.deploy.pipeline import DeploymentPipeline
from certkeeper.deploy.registry import get_action_class, register_action

__all__ = [
    "ActionAttempt",
    "ActionContext",
    "DeployAction",
    "DeploymentPipeline",
    "get_action_class",
    "register_action",
]

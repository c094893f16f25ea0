"""Reusable cluster actions."""

from actions.kube import (
    CreateNamespacesAction,
    KubeApplyAction,
    KubeDeleteAction,
)

__all__ = [
    'CreateNamespacesAction',
    'KubeApplyAction',
    'KubeDeleteAction',
]

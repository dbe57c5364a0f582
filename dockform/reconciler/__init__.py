"""Reconciliation engine: diff declarations against state, apply in order."""

from dockform.reconciler.engine import Reconciler

__all__ = ["Reconciler"]

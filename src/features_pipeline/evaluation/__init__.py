"""
Binary classification evaluation: confusion counts and derived metrics.
"""

from __future__ import annotations

from .metrics import BinaryMetrics, ConfusionMatrix, confusion_matrix, evaluate_binary

__all__ = ["BinaryMetrics", "ConfusionMatrix", "confusion_matrix", "evaluate_binary"]

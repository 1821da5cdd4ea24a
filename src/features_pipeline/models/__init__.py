"""
Classifier capability: build a feature matrix, fit, predict.
"""

from __future__ import annotations

from .classifier import ESTIMATORS, Classifier, SklearnClassifier, select_feature_matrix

__all__ = ["Classifier", "ESTIMATORS", "SklearnClassifier", "select_feature_matrix"]

"""
Test suite for the features_pipeline package.

This package is organized by concern:

- features/   – tests for feature steps, execution planning and the engine
- evaluation/ – tests for binary classification metrics
- data/       – tests for loading, writing and splitting tables
- cli/        – tests for the Typer-based command-line interface
- mlops/      – tests for MLflow utilities

Top-level modules cover config, logging, exceptions, labels, the classifier
and the end-to-end pipeline.
"""

__all__: list[str] = []

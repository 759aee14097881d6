"""Batch pipelines for staging loads and UEI reconciliation.

Each step is callable independently so the CLI scripts and the API share
the same code paths.
"""

"""Operator CLIs: failed-settlement reprocessing and season status."""

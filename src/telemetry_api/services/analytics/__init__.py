"""Aggregation jobs and dashboard read models."""

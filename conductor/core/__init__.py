"""Core configuration, errors and resilience utilities for conductor."""

"""Core utilities for the throttling service."""

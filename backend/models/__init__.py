"""Pydantic models for external payloads."""

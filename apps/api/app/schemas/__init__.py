"""Pydantic schemas for flow definitions and API request/response models."""

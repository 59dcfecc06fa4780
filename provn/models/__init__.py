"""
Pydantic models for videos, processing jobs and social data.
"""

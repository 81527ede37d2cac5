"""
Core business logic for session audio.

This module is framework-agnostic - it doesn't import FastAPI, Snowflake,
boto3, or any infrastructure concerns. The infrastructure layer implements
the protocols in core.audio.ports instead.
"""

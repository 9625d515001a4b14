"""Pydantic request/response schemas shared by the API routes and services."""

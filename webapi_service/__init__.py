"""Startup orchestration for the WebAPIService request pipeline."""

__version__ = "1.0.0"

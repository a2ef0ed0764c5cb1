"""Dynamics 365 configuration, Web API client, metadata parsing and settings command."""

__version__ = "0.1.0"
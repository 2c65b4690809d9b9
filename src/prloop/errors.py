"""Shared exception base for collaborator fetch failures."""

from __future__ import annotations


class FetchError(Exception):
    """Raised when an external collaborator (gh, git, CircleCI) cannot deliver data."""

"""Exceptions raised by Curator operations."""

from __future__ import annotations


class CuratorError(Exception):
    """Base class for Curator errors."""


class OperationInProgressError(CuratorError):
    """A single-flight operation was started while another run is active."""


class AuditInProgressError(OperationInProgressError):
    def __init__(self) -> None:
        super().__init__("Audit already in progress")


class FixBatchInProgressError(OperationInProgressError):
    def __init__(self) -> None:
        super().__init__("Cover fix batch already in progress")


class SourceConfigError(CuratorError):
    """The asset source is not configured (e.g. missing API key)."""

"""Ingestion errors."""

from __future__ import annotations


class ProviderTransportError(RuntimeError):
    """A provider read call failed before a response could be mapped."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

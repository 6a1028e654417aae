"""Re-export persistence protocols from core for convenience."""

from __future__ import annotations

from scoresync.core.protocols import ICacheBackend, IFileStore, IRunLock

__all__ = ["ICacheBackend", "IFileStore", "IRunLock"]

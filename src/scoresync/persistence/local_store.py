"""Filesystem-backed IFileStore for CLI and local runs."""

from __future__ import annotations

from pathlib import Path

from scoresync.core.exceptions import ArtifactStoreError


class LocalFileStore:
    """Stores artifacts under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def read(self, path: str) -> bytes:
        try:
            return (self._root / path).read_bytes()
        except OSError as exc:
            raise ArtifactStoreError(f"Local read failed for {path!r}: {exc}") from exc

    def write(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        target = self._root / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise ArtifactStoreError(f"Local write failed for {path!r}: {exc}") from exc
        return str(target)

    def list_files(self, prefix: str) -> list[str]:
        if not self._root.exists():
            return []
        files = (p.relative_to(self._root).as_posix() for p in self._root.rglob("*") if p.is_file())
        return sorted(f for f in files if f.startswith(prefix))

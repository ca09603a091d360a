from __future__ import annotations

import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional


def atomic_write_text(path: Path, content: str) -> Path:
    """Write UTF-8 text through a sibling temp file and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return path


class ArtifactStore:
    """Manage durable on-disk locations for execution artifacts."""

    def __init__(self, root: Optional[Path] = None) -> None:
        resolved_root = root or Path.cwd() / "artifacts"
        self._root = resolved_root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def videos_dir(self) -> Path:
        return self._ensure_dir(self._root / "videos")

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def video_path(self, name: str) -> Optional[Path]:
        """Resolve a stored video by name, refusing anything outside the videos dir."""
        base = self.videos_dir.resolve()
        candidate = (base / name).resolve()
        try:
            candidate.relative_to(base)
        except ValueError:
            return None
        if candidate == base or not candidate.is_file():
            return None
        return candidate

    def store_video(self, source: Path, owner_key: str) -> str:
        """Copy a video into durable storage as <owner_key>-<epoch_ms><ext>."""
        extension = source.suffix.lower() or ".webm"
        destination_dir = self.videos_dir
        stamp = int(time.time() * 1000)
        with source.open("rb") as src:
            while True:
                destination = destination_dir / f"{owner_key}-{stamp}{extension}"
                try:
                    # exclusive create claims the name
                    dst = destination.open("xb")
                except FileExistsError:
                    stamp += 1
                    continue
                with dst:
                    shutil.copyfileobj(src, dst)
                return destination.name


_artifact_store: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    global _artifact_store
    if _artifact_store is None:
        _artifact_store = ArtifactStore()
    return _artifact_store

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from PIL import Image

from stepwright.constants import SCREENSHOT_EXTENSION, VIDEO_EXTENSIONS
from stepwright.schemas import ArtifactKind
from stepwright.services.artifacts import ArtifactStore
from stepwright.services.runner import build_manifest

LOGGER = logging.getLogger("stepwright.harvester")


@dataclass
class Screenshot:
    name: str
    data_uri: str
    width: Optional[int] = None
    height: Optional[int] = None
    kind: ArtifactKind = ArtifactKind.screenshot


@dataclass
class Harvest:
    video_ref: Optional[str] = None
    screenshots: List[Screenshot] = field(default_factory=list)

    @property
    def screenshot_uris(self) -> List[str]:
        return [shot.data_uri for shot in self.screenshots]


class ArtifactHarvester:
    """Pick up videos and screenshots a run left behind in its output directory."""

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    def collect(
        self,
        output_dir: Path,
        owner_key: str,
        manifest: Optional[Sequence[Path]] = None,
    ) -> Harvest:
        files = list(manifest) if manifest is not None else build_manifest(output_dir)
        harvest = Harvest()
        harvest.video_ref = self._store_first_video(files, owner_key)
        top_level = sorted(
            (
                path
                for path in files
                if path.parent == output_dir and path.suffix.lower() == SCREENSHOT_EXTENSION
            ),
            key=lambda p: p.name,
        )
        for path in top_level:
            shot = self._inline_screenshot(path)
            if shot is not None:
                harvest.screenshots.append(shot)
        LOGGER.info(
            "Harvested %s video and %d screenshot(s) for %s",
            "one" if harvest.video_ref else "no",
            len(harvest.screenshots),
            owner_key,
        )
        return harvest

    def _store_first_video(self, files: Sequence[Path], owner_key: str) -> Optional[str]:
        for path in files:
            if path.suffix.lower() not in VIDEO_EXTENSIONS:
                continue
            try:
                name = self._store.store_video(path, owner_key)
            except OSError as exc:
                LOGGER.error("Could not store video %s: %s", path, exc)
                continue
            LOGGER.debug("Stored video %s as %s", path, name)
            return name
        return None

    def _inline_screenshot(self, path: Path) -> Optional[Screenshot]:
        try:
            payload = path.read_bytes()
        except OSError as exc:
            LOGGER.warning("Skipping unreadable screenshot %s: %s", path, exc)
            return None
        width, height = _image_size(payload, path)
        encoded = base64.b64encode(payload).decode("ascii")
        return Screenshot(
            name=path.name,
            data_uri=f"data:image/png;base64,{encoded}",
            width=width,
            height=height,
        )


def _image_size(payload: bytes, path: Path) -> Tuple[Optional[int], Optional[int]]:
    """Best-effort dimensions; the screenshot is inlined even when Pillow cannot decode it."""
    try:
        with Image.open(io.BytesIO(payload)) as image:
            width, height = image.size
    except Exception as exc:
        LOGGER.warning("Could not read dimensions of screenshot %s: %s", path, exc)
        return None, None
    return width, height

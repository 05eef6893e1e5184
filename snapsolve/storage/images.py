"""Filesystem store for images handed to background jobs by reference."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from snapsolve.utils.logger import get_logger

logger = get_logger(__name__)


class ImageStore:
    def __init__(self, image_dir: str) -> None:
        self.base = Path(image_dir)
        self.base.mkdir(parents=True, exist_ok=True)

    def path_for(self, problem_id: str) -> Path:
        return self.base / "{}_image.jpg".format(problem_id)

    def write(self, problem_id: str, image: bytes) -> str:
        path = self.path_for(problem_id)
        path.write_bytes(image)
        logger.info("background_image_written problem_id=%s bytes=%s", problem_id, len(image))
        return str(path)

    def read(self, image_path: str) -> Optional[bytes]:
        path = Path(image_path)
        if not path.is_file():
            return None
        return path.read_bytes()

    def remove(self, image_path: Optional[str]) -> None:
        if not image_path:
            return
        path = Path(image_path)
        if path.is_file():
            path.unlink()
            logger.info("background_image_removed path=%s", path)

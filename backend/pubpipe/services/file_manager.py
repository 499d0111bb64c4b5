"""
File management service for pubpipe.

Handles the date-bucketed per-unit working directories with path
traversal protection.
"""
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List

from pubpipe.config import settings

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".webm", ".flv", ".mov")


@dataclass(frozen=True)
class UnitWorkspace:
    """Artifact locations inside one unit's working directory."""

    root: Path
    source_ref: str

    @property
    def cover_path(self) -> Path:
        return self.root / "cover.jpg"

    @property
    def metadata_path(self) -> Path:
        return self.root / "meta.json"

    def raw_subtitle_path(self) -> Path:
        return self.root / f"{self.source_ref}.srt"

    def subtitle_path(self, language: str) -> Path:
        return self.root / f"{language}.srt"

    def find_videos(self) -> List[Path]:
        if not self.root.is_dir():
            return []
        return sorted(
            p for p in self.root.iterdir()
            if p.is_file() and p.suffix.lower() in VIDEO_EXTENSIONS
        )


class FileManager:
    """
    Manage filesystem artifacts for work units.

    Layout: {base_dir}/{YYYY-MM-DD of unit creation}/{source_ref}/
    """

    def __init__(self, base_dir: str | Path | None = None):
        """
        Initialize FileManager with base directory.

        Args:
            base_dir: Root directory for all unit workspaces.
                     If None, uses settings.storage.work_dir
        """
        if base_dir is None:
            base_dir = settings.storage.work_dir

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def get_unit_dir(self, source_ref: str, created_at: datetime) -> Path:
        """
        Get or create the working directory for a unit.

        Raises:
            ValueError: If source_ref creates path outside base_dir (traversal attack)
        """
        date_dir = self.base_dir / created_at.strftime("%Y-%m-%d")
        unit_dir = (date_dir / _safe_name(source_ref)).resolve()

        if unit_dir.parent != date_dir:
            raise ValueError("Invalid unit path")

        unit_dir.mkdir(parents=True, exist_ok=True)
        return unit_dir

    def workspace(self, source_ref: str, created_at: datetime) -> UnitWorkspace:
        return UnitWorkspace(root=self.get_unit_dir(source_ref, created_at), source_ref=_safe_name(source_ref))


def _safe_name(source_ref: str) -> str:
    # Full URLs are valid refs; keep them usable as a single path segment
    for ch in ("://", "/", "?", "&", "=", ":"):
        source_ref = source_ref.replace(ch, "_")
    return source_ref

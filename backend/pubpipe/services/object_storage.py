"""Object storage for published artifacts such as cover images."""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class ObjectStorage(ABC):
    @abstractmethod
    async def upload(self, path: Path, key: Optional[str] = None) -> str:
        """Store the file and return the key it can be fetched under."""
        ...


class LocalObjectStorage(ObjectStorage):
    """Keeps objects in a directory tree under `root`."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        target = (self.root / key).resolve()
        if not target.is_relative_to(self.root):
            raise ValueError("Invalid object key")
        return target

    async def upload(self, path: Path, key: Optional[str] = None) -> str:
        key = key or path.name
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, path, target)
        logger.debug(f"Stored {path.name} as {key}")
        return key

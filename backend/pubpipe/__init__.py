"""pubpipe - staggered video publishing pipeline.

This module provides startup validation functions to ensure required
external tools are available before the schedulers begin.
Call validate_dependencies() during application startup.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies(ffmpeg_path: str = "ffmpeg", ytdlp_path: str = "yt-dlp") -> None:
    """Validate required system tools are available.

    Raises:
        RuntimeError: If ffmpeg or yt-dlp is not found or not functional.
    """
    checks = [
        (ffmpeg_path, "-version", "Install ffmpeg: sudo apt-get install ffmpeg / brew install ffmpeg"),
        (ytdlp_path, "--version", "Install yt-dlp: pip install yt-dlp / brew install yt-dlp"),
    ]
    for binary, flag, hint in checks:
        try:
            result = subprocess.run(
                [binary, flag],
                capture_output=True,
                check=True,
                text=True,
            )
            version_line = result.stdout.split("\n")[0]
            logger.info(f"{binary} validated: {version_line}")
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise RuntimeError(f"{binary} not found on PATH. {hint}") from e

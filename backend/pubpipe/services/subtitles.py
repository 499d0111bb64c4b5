"""SRT subtitle parsing and rendering."""

import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable, List, Mapping

_TIMING_RE = re.compile(r"^\s*(\d{1,2}:\d{2}:\d{2}[,.]\d{1,3})\s*-->\s*(\d{1,2}:\d{2}:\d{2}[,.]\d{1,3})")


@dataclass(frozen=True)
class SubtitleCue:
    index: int
    start: str
    end: str
    text: str

    def with_text(self, text: str) -> "SubtitleCue":
        return replace(self, text=text)


def format_timestamp(seconds: float) -> str:
    """Render seconds as an SRT timestamp (HH:MM:SS,mmm)."""
    total_ms = max(0, int(round(seconds * 1000)))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def cues_from_transcript(entries: Iterable[Mapping[str, Any]]) -> List[SubtitleCue]:
    """Build cues from transcript entries with `text`, `offset` and `duration` in seconds."""
    cues = []
    for entry in entries:
        text = str(entry.get("text") or "").strip()
        if not text:
            continue
        offset = float(entry.get("offset") or 0)
        duration = float(entry.get("duration") or 0)
        cues.append(SubtitleCue(
            index=len(cues) + 1,
            start=format_timestamp(offset),
            end=format_timestamp(offset + duration),
            text=text,
        ))
    return cues


def parse_srt(content: str) -> List[SubtitleCue]:
    """Parse SRT text into cues.

    Blocks without a timing line are ignored. Multi-line cue text is kept
    with its line breaks.
    """
    cues = []
    blocks = re.split(r"\n\s*\n", content.replace("\r\n", "\n").lstrip("\ufeff").strip())
    for block in blocks:
        lines = block.split("\n")
        timing_at = next((i for i, line in enumerate(lines) if _TIMING_RE.match(line)), None)
        if timing_at is None:
            continue
        match = _TIMING_RE.match(lines[timing_at])
        index = len(cues) + 1
        if timing_at > 0 and lines[timing_at - 1].strip().isdigit():
            index = int(lines[timing_at - 1].strip())
        cues.append(SubtitleCue(
            index=index,
            start=match.group(1).replace(".", ","),
            end=match.group(2).replace(".", ","),
            text="\n".join(lines[timing_at + 1:]).strip(),
        ))
    return cues


def format_srt(cues: Iterable[SubtitleCue]) -> str:
    parts = [f"{cue.index}\n{cue.start} --> {cue.end}\n{cue.text}\n" for cue in cues]
    return "\n".join(parts)


def read_srt(path: str | Path) -> List[SubtitleCue]:
    return parse_srt(Path(path).read_text(encoding="utf-8"))


def write_srt(path: str | Path, cues: Iterable[SubtitleCue]) -> Path:
    path = Path(path)
    path.write_text(format_srt(cues), encoding="utf-8")
    return path

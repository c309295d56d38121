"""
Stage-weighted progress model.

Each processing stage owns a disjoint, inclusive integer range of the
overall 0-100 scale. The tables below are client-facing: changing a range
changes what every progress bar shows, so bump the table version with it.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from transcribe_pipeline.schemas.progress import ServiceProgress


@dataclass(frozen=True)
class StageRange:
    name: str
    start: int
    end: int


class StageTable:
    def __init__(self, version: str, ranges: List[Tuple[str, int, int]]):
        self.version = version
        self._ranges: Dict[str, StageRange] = {}
        for name, start, end in ranges:
            self._ranges[name] = StageRange(name, start, end)
        self.validate()

    def validate(self) -> None:
        """Ranges must be ordered, disjoint and cover exactly [0, 100]."""
        expected = 0
        for stage in self._ranges.values():
            if stage.start != expected:
                raise ValueError(
                    f"{self.version}: stage {stage.name!r} starts at {stage.start}, expected {expected}"
                )
            if stage.end < stage.start:
                raise ValueError(f"{self.version}: stage {stage.name!r} has an empty range")
            expected = stage.end + 1

        if expected != 101:
            raise ValueError(f"{self.version}: stages cover [0, {expected - 1}] instead of [0, 100]")

    def __contains__(self, stage: str) -> bool:
        return stage in self._ranges

    def stages(self) -> List[str]:
        return list(self._ranges)

    def ranges(self) -> List[StageRange]:
        return list(self._ranges.values())

    def start(self, stage: str) -> int:
        r = self._ranges.get(stage)
        return r.start if r else 0

    def end(self, stage: str) -> int:
        r = self._ranges.get(stage)
        return r.end if r else 100

    def progress(self, stage: str, fraction: float = 0.0) -> int:
        """Overall percentage for ``fraction`` (0.0-1.0) of the way through ``stage``."""
        r = self._ranges.get(stage)
        if r is None:
            return 0

        fraction = min(max(fraction, 0.0), 1.0)
        return min(100, math.floor(r.start + fraction * (r.end - r.start)))

    def chunk_progress(self, chunk: int, total_chunks: int, stage: str = "transcribing") -> int:
        """
        Progress after ``chunk`` of ``total_chunks`` sub-chunks of ``stage``.

        Chunks are spread over the inclusive width of the range, so with
        transcribing=[20, 69] and 4 chunks the values are 20, 32, 45, 57, 69.
        """
        r = self._ranges.get(stage)
        if r is None:
            return 0
        if total_chunks <= 0:
            return r.start

        chunk = min(max(chunk, 0), total_chunks)
        width = r.end - r.start + 1
        return min(r.end, math.floor(r.start + chunk * width / total_chunks))

    def clamp(self, stage: str, value: float) -> int:
        r = self._ranges.get(stage)
        if r is None:
            return min(100, max(0, int(value)))
        return min(r.end, max(r.start, int(value)))


TRANSCRIPTION_STAGES = StageTable(
    "transcription-v1",
    [
        ("starting", 0, 9),
        ("downloading", 10, 19),
        ("transcribing", 20, 69),
        ("diarization", 70, 79),
        ("ai_analysis", 80, 89),
        ("saving", 90, 99),
        ("completed", 100, 100),
    ],
)

BOT_STAGES = StageTable(
    "bot-v1",
    [
        ("bot_connecting", 0, 24),
        ("bot_joining", 25, 49),
        ("bot_recording", 50, 99),
        ("completed", 100, 100),
    ],
)

# names the transcription service uses for stages we track under another name
STAGE_ALIASES = {
    "chunk_progress": "transcribing",
    "transcription": "transcribing",
    "download": "downloading",
    "analysis": "ai_analysis",
    "done": "completed",
}


def normalize_stage(stage: Optional[str]) -> Optional[str]:
    if stage is None:
        return None
    return STAGE_ALIASES.get(stage, stage)


def translate_service_progress(
    event: ServiceProgress,
    last_progress: int,
    table: StageTable = TRANSCRIPTION_STAGES,
) -> Tuple[str, int]:
    """
    Map one service progress event to (stage, overall percent).

    Chunk counters win over the reported value; otherwise the reported value
    is pinned into the stage's range. The service reports absolute
    percentages, so only values strictly between 0 and 1 are read as a
    fraction of the stage; 1 and 1.0 mean 1%. Unknown stages keep the last
    value. The result never goes below ``last_progress``.
    """
    stage = normalize_stage(event.stage) or "transcribing"

    if stage not in table:
        return stage, last_progress

    if event.chunk is not None and event.total_chunks:
        value = table.chunk_progress(event.chunk, event.total_chunks, stage)
    elif event.progress is None:
        value = table.start(stage)
    elif 0 < event.progress < 1:
        value = table.progress(stage, event.progress)
    else:
        value = table.clamp(stage, event.progress)

    return stage, max(last_progress, value)

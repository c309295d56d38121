# transcribe_pipeline/services/caption_fallback.py
import math
from collections import OrderedDict
from typing import Dict, List, Tuple

from transcribe_pipeline.config import CAPTION_WORDS_PER_SECOND
from transcribe_pipeline.schemas.bot import CaptionSegment, SpeakerStat

MIN_SEGMENT_SECONDS = 1.0


def word_count(text: str) -> int:
    return len(text.split()) if text else 0


def usable_captions(captions: List[CaptionSegment]) -> List[CaptionSegment]:
    return [c for c in captions if c.text and c.text.strip()]


def caption_transcript(captions: List[CaptionSegment]) -> str:
    """One ``speaker: text`` line per caption, in arrival order."""
    return "\n".join(f"{c.speaker}: {c.text.strip()}" for c in usable_captions(captions))


def estimate_segments(
    captions: List[CaptionSegment],
    words_per_second: float = CAPTION_WORDS_PER_SECOND,
) -> List[Dict]:
    """
    Timestamped segments for captions scraped without timing.

    Captions that carry their own start/end keep them; the rest are laid
    end to end, each lasting as long as its words take to say.
    """
    segments = []
    cursor = 0.0
    for caption in usable_captions(captions):
        text = caption.text.strip()
        spoken = max(word_count(text) / words_per_second, MIN_SEGMENT_SECONDS)

        start = caption.start if caption.start is not None else cursor
        end = caption.end if caption.end is not None and caption.end > start else start + spoken
        cursor = max(cursor, end)

        segments.append({
            "speaker": caption.speaker or "Unknown",
            "text": text,
            "start": round(start, 2),
            "end": round(end, 2),
        })
    return segments


def _largest_remainder(weights: List[int], total: int, scale: int = 1000) -> List[int]:
    """Split ``scale`` units proportionally to ``weights`` so they sum exactly."""
    raw = [w * scale / total for w in weights]
    units = [math.floor(r) for r in raw]
    short = scale - sum(units)
    by_remainder = sorted(range(len(raw)), key=lambda i: (raw[i] - units[i], weights[i]), reverse=True)
    for i in by_remainder[:short]:
        units[i] += 1
    return units


def speaker_stats(segments: List[Dict]) -> List[SpeakerStat]:
    """
    Per-speaker word counts and estimated talk time, most talkative first.

    Percentages are word-count weighted, rounded to one decimal, and always
    add up to exactly 100 when anybody said anything.
    """
    per_speaker: "OrderedDict[str, Tuple[int, int, float]]" = OrderedDict()
    for seg in segments:
        words, talks, seconds = per_speaker.get(seg["speaker"], (0, 0, 0.0))
        per_speaker[seg["speaker"]] = (
            words + word_count(seg["text"]),
            talks + 1,
            seconds + (seg["end"] - seg["start"]),
        )

    names = list(per_speaker)
    words = [per_speaker[n][0] for n in names]
    total_words = sum(words)
    tenths = _largest_remainder(words, total_words) if total_words else [0] * len(names)

    stats = [
        SpeakerStat(
            speaker=name,
            words=per_speaker[name][0],
            talks=per_speaker[name][1],
            estimatedSeconds=round(per_speaker[name][2], 2),
            percentage=tenths[i] / 10,
        )
        for i, name in enumerate(names)
    ]
    stats.sort(key=lambda s: s.words, reverse=True)
    return stats

"""
Transcript Segmentation
=======================

Groups a word-level timestamped transcript into ordered, non-overlapping
segments, the unit both the prosody extractor and the retrieval engine work on.

Policy:
- Close a segment after a word ending in sentence punctuation.
- If no sentence boundary arrives within `max_window_seconds`, split at the
  last word boundary that keeps the segment inside the window.
- A single word longer than the window becomes its own segment.

Segment text is the verbatim word tokens joined by single spaces. Nothing is
lower-cased, stripped or re-punctuated here; search normalization happens at
query time on copies of the text.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from spokenkb.interfaces import WordTiming
from spokenkb.utils.error_codes import ErrorCode, IntegrityViolation
from spokenkb.utils.logger import setup_worker_logger

logger = setup_worker_logger('segmenter')

MIN_WINDOW_SECONDS = 5.0
MAX_WINDOW_SECONDS = 15.0

# Closing quotes/brackets that may trail sentence punctuation ("Really?")
_TRAILING_CLOSERS = '"\'”’)]}»'


@dataclass(frozen=True)
class SegmentSpan:
    """A segment before persistence. word_end is exclusive."""
    index: int
    start_time: float
    end_time: float
    text: str
    word_start: int
    word_end: int

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class SegmenterConfig:
    """Segmenter parameters"""
    max_window_seconds: float = MAX_WINDOW_SECONDS
    sentence_end_chars: str = '.?!…'

    def __post_init__(self):
        if not MIN_WINDOW_SECONDS <= self.max_window_seconds <= MAX_WINDOW_SECONDS:
            raise ValueError(
                f"max_window_seconds must be within [{MIN_WINDOW_SECONDS}, {MAX_WINDOW_SECONDS}], "
                f"got {self.max_window_seconds}"
            )

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'SegmenterConfig':
        config = config or {}
        return cls(
            max_window_seconds=float(config.get('max_window_seconds', MAX_WINDOW_SECONDS)),
            sentence_end_chars=config.get('sentence_end_chars', '.?!…'),
        )


def validate_words(words: Sequence[WordTiming]) -> List[WordTiming]:
    """Coerce to WordTiming and reject malformed timings.

    Raises IntegrityViolation for empty tokens, negative or inverted spans and
    start times that go backwards.
    """
    validated = []
    previous_start = None
    for position, item in enumerate(words):
        word = WordTiming(*item)
        if not isinstance(word.word, str) or not word.word.strip():
            raise IntegrityViolation(f"Word {position} has empty text",
                                     error_code=ErrorCode.MALFORMED_TRANSCRIPT)
        start, end = float(word.start), float(word.end)
        if start < 0 or end < start:
            raise IntegrityViolation(f"Word {position} has invalid span {start}-{end}",
                                     error_code=ErrorCode.MALFORMED_TRANSCRIPT)
        if previous_start is not None and start < previous_start:
            raise IntegrityViolation(f"Word {position} starts before word {position - 1}",
                                     error_code=ErrorCode.MALFORMED_TRANSCRIPT)
        previous_start = start
        validated.append(WordTiming(word.word, start, end))
    return validated


class TranscriptSegmenter:
    """Splits word timings into sentence or window bounded segments."""

    def __init__(self, config: Optional[SegmenterConfig] = None):
        self.config = config or SegmenterConfig()

    def is_sentence_end(self, token: str) -> bool:
        stripped = token.rstrip().rstrip(_TRAILING_CLOSERS)
        return bool(stripped) and stripped[-1] in self.config.sentence_end_chars

    def segment(self, words: Sequence[WordTiming]) -> List[SegmentSpan]:
        """Segment a transcript. An empty transcript yields no segments."""
        words = validate_words(words)
        if not words:
            return []

        window = self.config.max_window_seconds
        spans: List[SegmentSpan] = []
        current_start = 0
        forced_splits = 0

        for position, word in enumerate(words):
            if position > current_start and word.end - words[current_start].start > window:
                # Adding this word would overflow the window: close before it
                spans.append(self._make_span(words, current_start, position, spans))
                current_start = position
                forced_splits += 1

            if self.is_sentence_end(word.word):
                spans.append(self._make_span(words, current_start, position + 1, spans))
                current_start = position + 1

        if current_start < len(words):
            spans.append(self._make_span(words, current_start, len(words), spans))

        logger.debug(f"Segmented {len(words)} words into {len(spans)} segments "
                     f"({forced_splits} forced window splits)")
        return spans

    def _make_span(self, words: List[WordTiming], start: int, end: int,
                   previous: List[SegmentSpan]) -> SegmentSpan:
        chunk = words[start:end]
        start_time = chunk[0].start
        end_time = max(w.end for w in chunk)
        if previous:
            # Overlapping word timings must not produce overlapping segments
            start_time = max(start_time, previous[-1].end_time)
            end_time = max(end_time, start_time)
        return SegmentSpan(
            index=len(previous),
            start_time=start_time,
            end_time=end_time,
            text=' '.join(w.word for w in chunk),
            word_start=start,
            word_end=end,
        )


def segment_words(words: Sequence[WordTiming], config: Optional[SegmenterConfig] = None) -> List[SegmentSpan]:
    """Convenience function for one-shot segmentation."""
    return TranscriptSegmenter(config).segment(words)

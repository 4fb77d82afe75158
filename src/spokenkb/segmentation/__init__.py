from .segmenter import (
    SegmentSpan,
    SegmenterConfig,
    TranscriptSegmenter,
    segment_words,
    validate_words,
)

__all__ = ['SegmentSpan', 'SegmenterConfig', 'TranscriptSegmenter', 'segment_words', 'validate_words']

"""Transcript handling: segment model, event aggregation, final-line persistence."""
from .models import Segment, speaker_label
from .aggregator import TranscriptAggregator, reduce_segments
from .writer import TranscriptWriterBase, create_transcript_writer

__all__ = [
    "Segment",
    "speaker_label",
    "TranscriptAggregator",
    "reduce_segments",
    "TranscriptWriterBase",
    "create_transcript_writer",
]

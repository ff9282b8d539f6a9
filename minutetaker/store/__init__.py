from .transcript_writer import TranscriptWriter, format_segment, format_timestamp

__all__ = ["TranscriptWriter", "format_segment", "format_timestamp"]

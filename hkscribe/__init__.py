"""
hkscribe - Long-form Cantonese transcription with Gemini.

Takes a single audio or video file and produces one time-consistent
transcript through a segmented pipeline: duration probe → quota check →
byte-range splitting → streamed per-segment transcription with retry →
timestamp correction → transcript parsing and CSV export.
"""

__version__ = "0.1.0"

"""
hkscribe.transcribe - Segmented transcription pipeline.

Splits long media into byte-range segments, streams each one through the
Gemini backend with retry, and merges the outputs into one transcript
with absolute timestamps.
"""

from __future__ import annotations

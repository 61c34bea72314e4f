"""
hkscribe.extract - Local media inspection.

Builds MediaFile handles and probes duration with FFprobe. Decoding and
re-encoding media is left to external tools.
"""

from __future__ import annotations

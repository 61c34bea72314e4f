"""
hkscribe.export - Transcript export formats.

CSV with a byte-order mark for spreadsheet tools.
"""

from __future__ import annotations

"""
Tacho Link - Tachograph BLE Download Tool

Authenticates against tachograph BLE adapters speaking an undocumented
write/notify protocol and downloads Vehicle Unit (.tgd) and Driver Card
(.ddd) data.

Device behaviour is inferred, never trusted: authentication outcomes come
from byte-pattern heuristics and every wait is bounded, so a silent or
unexpected device yields a partial result rather than a hang.
"""

__version__ = "0.1.0"
__author__ = "Tacho Link Contributors"

from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence

DEFAULT_LADDER: Sequence[int] = (1080, 720, 480)

# Used when the source height cannot be probed; permits the full ladder.
DEFAULT_SOURCE_HEIGHT = 1080

# Default rate caps per rung in kbps
PRESET_LADDER_KBPS: Dict[int, int] = {
    1080: 5500,
    720: 3000,
    480: 1200,
}

BASE_CRF = 21
CRF_STEP = 2


def plan(source_height: Optional[int], candidates: Sequence[int] = DEFAULT_LADDER) -> List[int]:
    """Return the rendition heights for a source, tallest first.

    Never upscales: every rung is <= source height. If no candidate fits,
    a single rung at the source height rounded down to even (minimum 2).
    """
    if source_height is None or source_height <= 0:
        source_height = DEFAULT_SOURCE_HEIGHT
    rungs = sorted({int(c) for c in candidates if 0 < int(c) <= source_height}, reverse=True)
    if rungs:
        return rungs
    return [max(1, source_height // 2) * 2]


def bitrate_for(height: int, preset_ladder_kbps: Optional[Dict[int, int]] = None) -> int:
    preset = preset_ladder_kbps or PRESET_LADDER_KBPS
    return preset.get(height, max(600, int(height * 4)))


def crf_for(rung_index: int) -> int:
    """Quality target per rung; lower rungs trade quality for size."""
    return BASE_CRF + CRF_STEP * rung_index


def parse_resolution_list(res_str: str) -> List[int]:
    """Parse comma-separated resolution list."""
    values: List[int] = []
    for tok in re.split(r"[ ,]+", res_str.strip()):
        if not tok:
            continue
        try:
            values.append(int(tok.rstrip("pP")))
        except ValueError:
            pass
    # Remove duplicates while preserving order
    seen = set()
    ordered: List[int] = []
    for v in values:
        if v > 0 and v not in seen:
            seen.add(v)
            ordered.append(v)
    return ordered

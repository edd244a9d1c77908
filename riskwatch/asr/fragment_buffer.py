from __future__ import annotations

"""
Maintain a session-scoped transcript buffer for live fragments.

Design intent:
- Let an interim fragment be superseded by a later fragment in the same (speaker, offset) slot.
- Drop repeated final fragments so re-sent provider events are analysed once.
- Preserve the ordered final timeline that is persisted when the session stops.
"""

import re
from dataclasses import dataclass
from typing import Optional

from riskwatch.asr.models import TranscriptFragment

_WS_RE = re.compile(r"\s+")


def _normalize_text(text: str) -> str:
    return _WS_RE.sub(" ", (text or "").strip()).lower()


@dataclass(frozen=True)
class FragmentAppendResult:
    accepted: bool
    is_final: bool
    duplicate: bool = False
    superseded: Optional[TranscriptFragment] = None


class FragmentBuffer:
    def __init__(self) -> None:
        self._finals: list[TranscriptFragment] = []
        self._final_keys: set[tuple[int, int, str]] = set()
        self._interims: dict[tuple[int, int], TranscriptFragment] = {}

    def clear(self) -> None:
        self._finals = []
        self._final_keys = set()
        self._interims = {}

    def append(self, fragment: TranscriptFragment) -> FragmentAppendResult:
        normalized = _normalize_text(fragment.text)
        slot = fragment.slot_key()
        superseded = self._interims.pop(slot, None)

        if not fragment.is_final:
            self._interims[slot] = fragment
            return FragmentAppendResult(accepted=True, is_final=False, superseded=superseded)

        if not normalized:
            return FragmentAppendResult(accepted=False, is_final=True, superseded=superseded)
        key = (slot[0], slot[1], normalized)
        if key in self._final_keys:
            return FragmentAppendResult(accepted=False, is_final=True, duplicate=True, superseded=superseded)

        self._final_keys.add(key)
        self._finals.append(fragment)
        if len(self._finals) > 1 and self._finals[-2].start_offset_ms > fragment.start_offset_ms:
            self._finals.sort(key=lambda item: (item.start_offset_ms, item.speaker))
        return FragmentAppendResult(accepted=True, is_final=True, superseded=superseded)

    @property
    def final_fragments(self) -> list[TranscriptFragment]:
        return list(self._finals)

    @property
    def interim_count(self) -> int:
        return len(self._interims)

    def text(self) -> str:
        return " ".join(item.text.strip() for item in self._finals if item.text.strip())

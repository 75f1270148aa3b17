import re
from typing import List, Optional

from ..core.config import settings
from .schema import ThinkingPhase, ThinkingProcessState

BULLET_PREFIXES = ("-", "*", "・", "•")
_PHASE_RE = re.compile(r"phase[:\s]*(\d+)(.*)", re.IGNORECASE)
_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")
_REST_STRIP = " \t:：-–—."

DEFAULT_PHASE_TITLE = settings["stream"]["default_phase_title"]


def normalize_phase_title(line: str) -> str:
    """`phase 2 - gather facts` -> `Phase 2: gather facts`, otherwise capitalize."""
    match = _PHASE_RE.search(line)
    if match:
        number = match.group(1)
        rest = match.group(2).strip(_REST_STRIP)
        return f"Phase {number}: {rest}" if rest else f"Phase {number}"
    return line[:1].upper() + line[1:]


def _strip_bullet(line: str) -> Optional[str]:
    for prefix in BULLET_PREFIXES:
        if line.startswith(prefix):
            return line[len(prefix):].strip()
    return None


def parse_thinking_phases(
    raw: Optional[str],
    default_title: str = DEFAULT_PHASE_TITLE,
) -> List[ThinkingPhase]:
    """Split free-form reasoning text into titled phases of bulleted steps.

    Heuristic, not a grammar: any non-bulleted line opens a phase, bulleted
    lines are steps of the phase above them. Partial trailing lines (as seen
    mid-stream) are parsed like any other line.
    """
    phases: List[ThinkingPhase] = []
    if not raw:
        return phases

    current: Optional[ThinkingPhase] = None
    for line in _LINE_BREAK_RE.split(raw):
        line = line.strip()
        if not line:
            continue

        step = _strip_bullet(line)
        if step is None:
            current = ThinkingPhase(title=normalize_phase_title(line))
            phases.append(current)
            continue

        if not step:
            continue
        if current is None:
            current = ThinkingPhase(title=default_title)
            phases.append(current)
        current.steps.append(step)

    return phases


def build_thinking_state(
    request_id: str,
    raw: Optional[str],
    is_streaming: bool = False,
) -> ThinkingProcessState:
    raw = raw or ""
    return ThinkingProcessState(
        request_id=request_id,
        raw=raw,
        phases=parse_thinking_phases(raw),
        is_streaming=is_streaming,
    )

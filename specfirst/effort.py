"""Effort level detection for phase runs.

Callers can ask for a quick, batch or thorough run with explicit flags, or
pass a free-form hint (text or a mapping from an upstream planner). Flags
win over hints; with neither, runs are ``standard``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigurationError
from .models import EffortLevel


logger = logging.getLogger("specfirst.effort")

SOURCE_FLAG = "explicit-flag"
SOURCE_HINT = "hint"
SOURCE_DEFAULT = "default"

COMPLEXITY_INDICATORS = ("large-scale", "multi-phase", "architectural", "spec-driven", "comprehensive")


@dataclass(slots=True)
class EffortDetection:
    effort_level: EffortLevel
    reason: str
    confidence: float
    source: str = SOURCE_DEFAULT
    batch: bool = False

    @property
    def explicit(self) -> bool:
        return self.source != SOURCE_DEFAULT

    @property
    def activates_workflow(self) -> bool:
        return should_activate(self.effort_level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effort_level": self.effort_level.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "source": self.source,
            "batch": self.batch,
            "activates_workflow": self.activates_workflow,
        }


def should_activate(level: EffortLevel | str) -> bool:
    """Thorough and determined work warrants the full gated workflow."""
    try:
        level = EffortLevel(str(level).lower())
    except ValueError:
        return False
    return level in (EffortLevel.THOROUGH, EffortLevel.DETERMINED)


def _default(reason: str) -> EffortDetection:
    return EffortDetection(EffortLevel.STANDARD, reason, 0.3)


def detect_effort_level(hint: Any) -> EffortDetection:
    """Read an effort level out of a mapping or a piece of text.

    A mapping must carry a known ``effort_level``. Text is scanned for
    level keywords; two or more complexity indicators lift anything short
    of ``determined`` to ``thorough``.
    """
    if hint is None:
        return _default("No effort hint provided")

    if isinstance(hint, Mapping):
        raw = str(hint.get("effort_level") or "").strip().lower()
        try:
            level = EffortLevel(raw)
        except ValueError:
            return _default(f"Unrecognised effort level '{raw}'")
        return EffortDetection(level, f"Explicit effort level: {level.value}", 1.0, SOURCE_HINT)

    text = str(hint).lower()
    detection = _default("No effort indicators found")
    for level, confidence in (
        (EffortLevel.DETERMINED, 0.9),
        (EffortLevel.THOROUGH, 0.8),
        (EffortLevel.MINIMAL, 0.8),
    ):
        if level.value in text:
            detection = EffortDetection(level, f"'{level.value}' keyword in effort hint", confidence, SOURCE_HINT)
            break

    indicators = [indicator for indicator in COMPLEXITY_INDICATORS if indicator in text]
    if len(indicators) >= 2 and detection.effort_level is not EffortLevel.DETERMINED:
        detection = EffortDetection(
            EffortLevel.THOROUGH,
            f"{len(indicators)} complexity indicators: {', '.join(indicators)}",
            0.7,
            SOURCE_HINT,
        )
    return detection


def detect_effort_from_flags(quick: bool = False, batch: bool = False, thorough: bool = False) -> EffortDetection:
    """Map run flags to an effort level.

    ``quick`` is minimal and ``thorough`` is thorough. ``batch`` only marks
    the run as non-interactive and keeps the level otherwise chosen.

    Raises:
        ConfigurationError: ``quick`` and ``thorough`` were both set.
    """
    if quick and thorough:
        raise ConfigurationError(
            "The quick and thorough flags cannot be combined",
            resolution="Pass at most one of quick or thorough",
        )
    if thorough:
        return EffortDetection(EffortLevel.THOROUGH, "thorough flag", 1.0, SOURCE_FLAG, batch=batch)
    if quick:
        return EffortDetection(EffortLevel.MINIMAL, "quick flag", 1.0, SOURCE_FLAG, batch=batch)
    if batch:
        return EffortDetection(EffortLevel.STANDARD, "batch flag", 1.0, SOURCE_FLAG, batch=True)
    return _default("No effort flags set")


def detect_effort(options: Optional[Mapping[str, Any]] = None) -> EffortDetection:
    """Effort for one run: flags first, then the ``effort`` hint."""
    options = options or {}
    flags = {name: bool(options.get(name)) for name in ("quick", "batch", "thorough")}
    if any(flags.values()):
        detection = detect_effort_from_flags(**flags)
    else:
        detection = detect_effort_level(options.get("effort"))
    if detection.explicit:
        logger.info(f"Effort mode: {detection.effort_level.value} ({detection.reason})")
    return detection

"""Trigger-source adapters.

Every input modality reduces to the same two events on a
:class:`TriggerSink`: ``request_activation(method)`` and
``activation_released()``.  The adapters hold no emergency state of
their own; double-firing is harmless because the state machine ignores
activation requests while it is not idle.

Thresholds and phrase lists are configuration (see ``config.settings``),
not part of the activation contract.
"""

from __future__ import annotations

import math
import re
import time
import unicodedata
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from typing import Final, Protocol

import structlog

from src.models.enums import TriggerMethod

logger = structlog.get_logger(__name__)

_MODIFIERS: Final[frozenset[str]] = frozenset({"ctrl", "shift", "alt", "meta"})
_WHITESPACE_RE: Final[re.Pattern[str]] = re.compile(r"\s+")


class TriggerSink(Protocol):
    def request_activation(self, method: TriggerMethod) -> bool: ...

    def activation_released(self) -> bool: ...


# ---------------------------------------------------------------------------
# Press-and-hold button
# ---------------------------------------------------------------------------


class HoldButtonTrigger:
    """Panic button: press starts the countdown, release before it ends cancels."""

    method = TriggerMethod.BUTTON_HOLD

    def __init__(self, sink: TriggerSink) -> None:
        self._sink = sink
        self._pressed = False

    @property
    def is_pressed(self) -> bool:
        return self._pressed

    def press(self) -> bool:
        self._pressed = True
        return self._sink.request_activation(self.method)

    def release(self) -> bool:
        if not self._pressed:
            return False
        self._pressed = False
        return self._sink.activation_released()


# ---------------------------------------------------------------------------
# Keyboard shortcut
# ---------------------------------------------------------------------------


def parse_hotkey(combo: str) -> tuple[frozenset[str], str]:
    """Parse ``"ctrl+shift+e"`` into ``({"ctrl", "shift"}, "e")``.

    Raises
    ------
    ValueError
        If the combination has no key or uses an unknown modifier.
    """
    parts = [p.strip().lower() for p in combo.split("+") if p.strip()]
    if not parts:
        raise ValueError(f"Empty hotkey combination: {combo!r}")
    *modifiers, key = parts
    unknown = set(modifiers) - _MODIFIERS
    if unknown:
        raise ValueError(f"Unknown modifier(s) in hotkey {combo!r}: {', '.join(sorted(unknown))}")
    if key in _MODIFIERS:
        raise ValueError(f"Hotkey {combo!r} has no non-modifier key")
    return frozenset(modifiers), key


class HotkeyTrigger:
    """Keyboard shortcut (default Ctrl+Shift+E).

    Modifiers must match exactly, so Ctrl+Alt+Shift+E does not fire a
    Ctrl+Shift+E binding.
    """

    method = TriggerMethod.HOTKEY

    def __init__(self, sink: TriggerSink, combo: str = "ctrl+shift+e") -> None:
        self._sink = sink
        self._modifiers, self._key = parse_hotkey(combo)
        self.combo = combo

    def matches(
        self,
        key: str,
        *,
        ctrl: bool = False,
        shift: bool = False,
        alt: bool = False,
        meta: bool = False,
    ) -> bool:
        pressed = {
            name
            for name, down in (("ctrl", ctrl), ("shift", shift), ("alt", alt), ("meta", meta))
            if down
        }
        return key.lower() == self._key and pressed == self._modifiers

    def handle_key(
        self,
        key: str,
        *,
        ctrl: bool = False,
        shift: bool = False,
        alt: bool = False,
        meta: bool = False,
    ) -> bool:
        """Return ``True`` when the key event requested activation."""
        if not self.matches(key, ctrl=ctrl, shift=shift, alt=alt, meta=meta):
            return False
        logger.info("trigger.hotkey", combo=self.combo)
        return self._sink.request_activation(self.method)


# ---------------------------------------------------------------------------
# Voice phrase
# ---------------------------------------------------------------------------


def _normalise(text: str) -> str:
    text = unicodedata.normalize("NFC", text).casefold()
    return _WHITESPACE_RE.sub(" ", text).strip()


class VoicePhraseTrigger:
    """Matches speech transcripts against per-language emergency phrases.

    Matching is a case-folded substring test on whitespace-normalised
    text, which is what the browser speech API's interim transcripts
    need.  Unknown languages fall back to the default language's list.
    """

    method = TriggerMethod.VOICE

    def __init__(
        self,
        sink: TriggerSink,
        phrases: Mapping[str, Sequence[str]],
        *,
        default_language: str = "en",
    ) -> None:
        self._sink = sink
        self._default_language = default_language
        self._phrases: dict[str, tuple[str, ...]] = {
            lang: tuple(_normalise(p) for p in plist if p.strip())
            for lang, plist in phrases.items()
        }

    @property
    def languages(self) -> list[str]:
        return sorted(self._phrases)

    def match(self, transcript: str, language: str | None = None) -> str | None:
        """Return the matched phrase, or ``None``."""
        text = _normalise(transcript)
        if not text:
            return None
        lang = language if language in self._phrases else self._default_language
        for phrase in self._phrases.get(lang, ()):
            if phrase in text:
                return phrase
        return None

    def handle_transcript(self, transcript: str, language: str | None = None) -> bool:
        phrase = self.match(transcript, language)
        if phrase is None:
            return False
        logger.info("trigger.voice_phrase", phrase=phrase, language=language or self._default_language)
        return self._sink.request_activation(self.method)


# ---------------------------------------------------------------------------
# Device shake
# ---------------------------------------------------------------------------


class ShakeTrigger:
    """Fires after ``required_peaks`` acceleration peaks within a window.

    Parameters
    ----------
    threshold:
        Acceleration magnitude (m/s^2, gravity included) a reading must
        exceed to count as a peak.
    required_peaks:
        Number of peaks needed inside ``window_seconds``.
    window_seconds:
        Sliding window length.
    clock:
        Monotonic clock used when a reading carries no timestamp.
    """

    method = TriggerMethod.SHAKE

    def __init__(
        self,
        sink: TriggerSink,
        *,
        threshold: float = 25.0,
        required_peaks: int = 3,
        window_seconds: float = 1.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if required_peaks < 1:
            raise ValueError("required_peaks must be at least 1")
        self._sink = sink
        self._threshold = threshold
        self._required = required_peaks
        self._window = window_seconds
        self._clock = clock
        self._peaks: deque[float] = deque()

    def detect(self, x: float, y: float, z: float, at: float | None = None) -> bool:
        """Feed one accelerometer reading; ``True`` when a shake completed."""
        now = self._clock() if at is None else at
        while self._peaks and now - self._peaks[0] > self._window:
            self._peaks.popleft()

        if math.sqrt(x * x + y * y + z * z) < self._threshold:
            return False

        self._peaks.append(now)
        if len(self._peaks) < self._required:
            return False

        self._peaks.clear()
        return True

    def fire(self) -> bool:
        logger.info("trigger.shake", threshold=self._threshold, peaks=self._required)
        return self._sink.request_activation(self.method)

    def handle_motion(self, x: float, y: float, z: float, at: float | None = None) -> bool:
        """Return ``True`` when the reading completed a shake and activation was accepted."""
        if not self.detect(x, y, z, at):
            return False
        return self.fire()

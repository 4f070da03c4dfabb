"""
Terminal status line for sampling progress.

StatusDisplay subscribes to the sampling state machine and redraws a single
line with a progress bar, the current phase and the status message.
"""

import logging
import shutil
import sys
from typing import Optional, TextIO

from samplebot.sampling.file_manager import midi_note_name
from samplebot.sampling.state_machine import DONE, IDLE


class StatusDisplay:
    """
    Renders state updates as one self-overwriting terminal line.

    Use as a subscriber: machine.subscribe(display.update)
    """

    def __init__(self, stream: TextIO = None, bar_width: int = 30):
        self.stream = stream or sys.stdout
        self.bar_width = bar_width
        self.last_line = ''
        self._last_phase: Optional[str] = None

        # Unicode/ASCII fallback characters
        if self._check_unicode_support():
            self.FILLED_CHAR = '█'
            self.EMPTY_CHAR = '░'
        else:
            self.FILLED_CHAR = '#'
            self.EMPTY_CHAR = '-'

    def _check_unicode_support(self) -> bool:
        """Check if the output stream can encode the bar characters."""
        try:
            '█░'.encode(getattr(self.stream, 'encoding', None) or 'utf-8')
            return True
        except (UnicodeEncodeError, LookupError):
            return False

    def _terminal_width(self) -> int:
        return max(40, min(200, shutil.get_terminal_size((80, 24)).columns))

    def progress_bar(self, progress: float) -> str:
        progress = max(0.0, min(1.0, progress))
        filled = int(round(self.bar_width * progress))
        bar = self.FILLED_CHAR * filled + self.EMPTY_CHAR * (self.bar_width - filled)
        return f"[{bar}] {progress * 100:5.1f}%"

    def format_state(self, state) -> str:
        parts = [self.progress_bar(state.progress), f"{state.phase:<11}"]
        event = state.current_event
        if event is not None:
            parts.append(f"{midi_note_name(event.note):>4} v{event.velocity:03d}")
        parts.append(state.status)
        return ' '.join(parts)

    def update(self, state) -> None:
        """Redraw the status line for a new state."""
        line = self.format_state(state)
        if self.stream.isatty():
            line = line[:self._terminal_width() - 1]
        padding = ' ' * max(0, len(self.last_line) - len(line))
        self.stream.write('\r' + line + padding)
        self.stream.flush()
        self.last_line = line

        if state.phase != self._last_phase:
            logging.debug(f"Phase: {state.phase}")
            self._last_phase = state.phase

        if not state.running and state.phase in (IDLE, DONE):
            self.stream.write('\n')
            self.stream.flush()
            self.last_line = ''

    __call__ = update

"""
MIDI Note Engine for SampleBot.

Sends note on/off messages to one or more MIDI outputs.
"""

import logging
from typing import Iterable, List, Optional

import mido

ALL_NOTES_OFF = 123


def open_output_ports(names: Iterable[str]) -> List:
    """
    Open MIDI output ports by name.

    Ports that fail to open are logged and skipped.

    Args:
        names: MIDI output port names

    Returns:
        List of opened mido output ports
    """
    ports = []
    for name in names or []:
        try:
            ports.append(mido.open_output(name))
            logging.info(f"MIDI output opened: {name}")
        except (IOError, OSError) as e:
            logging.error(f"Failed to open MIDI output '{name}': {e}")
    if not ports:
        logging.warning("No MIDI output configured - notes will not be sent")
    return ports


class MIDINoteEngine:
    """
    Note sender for sampling runs.

    Every message goes to all configured output ports, so one run can play
    several synths or a synth plus a MIDI monitor.
    """

    def __init__(self, midi_output_ports: Optional[List] = None, channel: int = 0,
                 test_mode: bool = False):
        """
        Initialize MIDI note engine.

        Args:
            midi_output_ports: mido output ports (notes fan out to all of them)
            channel: MIDI channel (0-15)
            test_mode: If True, log actions without sending MIDI
        """
        self.midi_output_ports = list(midi_output_ports or [])
        self.channel = channel
        self.test_mode = test_mode
        self.sounding_notes = set()

    @classmethod
    def from_config(cls, midi_config: dict, test_mode: bool = False) -> 'MIDINoteEngine':
        """Create an engine from the midi_interface config section."""
        names = midi_config.get('midi_output_names') or []
        if isinstance(names, str):
            names = [names]
        ports = [] if test_mode else open_output_ports(names)
        return cls(ports, channel=midi_config.get('midi_channel', 0), test_mode=test_mode)

    def _send(self, message: mido.Message) -> None:
        if self.test_mode:
            logging.info(f"[TEST MODE] Would send: {message}")
            return

        for port in self.midi_output_ports:
            try:
                port.send(message)
            except Exception as e:
                logging.error(f"Failed to send MIDI to {getattr(port, 'name', port)}: {e}")

    def send_note_on(self, note: int, velocity: int) -> None:
        """Send a note on message."""
        self._send(mido.Message('note_on', note=note, velocity=velocity, channel=self.channel))
        self.sounding_notes.add(note)
        logging.debug(f"MIDI Note ON: note={note}, velocity={velocity}, channel={self.channel}")

    def send_note_off(self, note: int) -> None:
        """Send a note off message."""
        self._send(mido.Message('note_off', note=note, velocity=0, channel=self.channel))
        self.sounding_notes.discard(note)
        logging.debug(f"MIDI Note OFF: note={note}")

    def panic(self, note: Optional[int] = None) -> None:
        """
        Silence the receiving synth right away.

        Sends note off for the given note and every note still sounding,
        then All Notes Off (CC 123) on the channel.
        """
        notes = set(self.sounding_notes)
        if note is not None:
            notes.add(note)
        for n in sorted(notes):
            self.send_note_off(n)
        self._send(mido.Message('control_change', control=ALL_NOTES_OFF, value=0,
                                channel=self.channel))
        logging.info("MIDI panic sent")

    def close(self) -> None:
        for port in self.midi_output_ports:
            try:
                port.close()
            except Exception as e:
                logging.warning(f"Failed to close MIDI output: {e}")
        self.midi_output_ports = []

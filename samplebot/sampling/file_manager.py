"""
File naming and SFZ mapping for sampled instruments.

This module provides FileManager class that handles:
- Sample file naming
- Output folder management
- SFZ file generation
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from samplebot.sampling.sample_queue import SampleEvent

NOTE_NAMES = ['C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B']


def midi_note_name(note: int) -> str:
    """Note name with octave, MIDI 60 = C4 (note 0 = C-1)."""
    octave = (note // 12) - 1
    return f"{NOTE_NAMES[note % 12]}{octave}"


class FileManager:
    """
    Names sample files and writes the SFZ mapping for a run.

    Sample files are named <sample_name>_<note>_<notename>_v<velocity>.wav
    with note and velocity zero-padded to three digits, so sorting the
    folder by name gives the sampling order.
    """

    def __init__(self, sampling_config: Dict):
        """
        Initialize the file manager.

        Args:
            sampling_config: Sampling configuration dictionary
        """
        folder = sampling_config.get('output_folder')
        self.output_folder: Optional[Path] = Path(folder) if folder else None
        self.sample_name = sampling_config.get('sample_name') or 'Sample'

        # SFZ key mapping range
        self.lowest_note = sampling_config.get('lowest_note', 0)
        self.highest_note = sampling_config.get('highest_note', 127)

    def generate_sample_filename(self, event: SampleEvent) -> str:
        """
        Generate the sample filename for a note.

        Args:
            event: Note and velocity

        Returns:
            Filename string
        """
        name = midi_note_name(event.note)
        return f"{self.sample_name}_{event.note:03d}_{name}_v{event.velocity:03d}.wav"

    def sample_path(self, event: SampleEvent) -> Path:
        return self.output_folder / self.generate_sample_filename(event)

    def prepare_output_folder(self) -> None:
        """Create the output folder if needed."""
        self.output_folder.mkdir(parents=True, exist_ok=True)

    def generate_sfz(self, samples: List[Tuple[SampleEvent, Path]],
                     output_path: Path = None) -> bool:
        """
        Generate SFZ mapping file for the sampled instrument.

        Args:
            samples: (event, file path) for every recorded sample
            output_path: Output SFZ file path (default: <sample_name>.sfz
                in the output folder)

        Returns:
            True if successful, False otherwise
        """
        if output_path is None:
            output_path = self.output_folder / f"{self.sample_name}.sfz"

        if not samples:
            logging.warning("No samples to write to SFZ")
            return False

        all_notes = sorted({event.note for event, _ in samples})
        velocities = sorted({event.velocity for event, _ in samples})

        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                f.write(f"// {self.sample_name} - Generated by SampleBot\n\n")

                for velocity in velocities:
                    lovel, hivel = self._calculate_velocity_range(velocity, velocities)
                    f.write("<group>\n")
                    if len(velocities) > 1:
                        f.write(f"lovel={lovel}\n")
                        f.write(f"hivel={hivel}\n")
                    f.write("\n")

                    group = sorted((event.note, path) for event, path in samples
                                   if event.velocity == velocity)
                    for note, path in group:
                        lokey, hikey = self._calculate_key_range(all_notes.index(note), note, all_notes)
                        f.write("<region>\n")
                        f.write(f"sample={Path(path).name}\n")
                        f.write(f"pitch_keycenter={note}\n")
                        f.write(f"lokey={lokey}\n")
                        f.write(f"hikey={hikey}\n")
                        f.write("\n")

            logging.info(f"SFZ file generated: {output_path}")
            return True
        except OSError as e:
            logging.error(f"Failed to generate SFZ: {e}")
            return False

    @staticmethod
    def _calculate_velocity_range(velocity: int, velocities: List[int]) -> Tuple[int, int]:
        """Each layer covers everything above the previous layer up to its own velocity."""
        index = velocities.index(velocity)
        lovel = 1 if index == 0 else velocities[index - 1] + 1
        hivel = 127 if index == len(velocities) - 1 else velocity
        return lovel, hivel

    def _calculate_key_range(self, index: int, note: int,
                             all_notes: List[int]) -> Tuple[int, int]:
        """Calculate lokey/hikey for a note based on its position."""
        if len(all_notes) == 1:
            return self.lowest_note, self.highest_note

        if index == 0:
            lokey = self.lowest_note
        else:
            lokey = (all_notes[index - 1] + note) // 2 + 1

        if index == len(all_notes) - 1:
            hikey = self.highest_note
        else:
            hikey = (note + all_notes[index + 1]) // 2

        return lokey, hikey

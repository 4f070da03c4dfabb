import argparse
import logging
import os
import re
import sys
from pathlib import Path

import yaml

from samplebot import __version__
from samplebot.errors import ConfigurationError

DEFAULT_CONFIG = 'conf/samplebot_config.yaml'


def note_name_to_midi(note_str):
    """
    Convert note name to MIDI number.
    Accepts: C-1 to G9, with optional # or b for sharps/flats.
    Examples: C4 = 60, A4 = 69, C#4 = 61, Db4 = 61

    Args:
        note_str: Note name (e.g., 'C4', 'A#3', 'Bb2') or MIDI number

    Returns:
        MIDI note number (0-127) or None if invalid
    """
    if isinstance(note_str, int):
        return note_str if 0 <= note_str <= 127 else None

    note_str = str(note_str).strip()
    try:
        midi_num = int(note_str)
        return midi_num if 0 <= midi_num <= 127 else None
    except ValueError:
        pass

    match = re.match(r'^([A-G])([#B]?)(-?[0-9])$', note_str.upper())
    if not match:
        return None

    note_name, accidental, octave = match.groups()
    note_values = {'C': 0, 'D': 2, 'E': 4, 'F': 5, 'G': 7, 'A': 9, 'B': 11}
    semitone = note_values[note_name]
    if accidental == '#':
        semitone += 1
    elif accidental == 'B':  # Flat
        semitone -= 1

    # C-1 = 0, C4 = 60
    midi_num = (int(octave) + 1) * 12 + semitone
    return midi_num if 0 <= midi_num <= 127 else None


def parse_int_list(text):
    """'40,100,127' -> [40, 100, 127]"""
    try:
        return [int(v) for v in str(text).replace(' ', '').split(',') if v]
    except ValueError:
        raise ConfigurationError(f"Expected comma-separated numbers, got '{text}'")


def get_arg_parser():
    parser = argparse.ArgumentParser(
        description="SampleBot - unattended hardware synth sampler"
    )

    main_group = parser.add_argument_group('main', 'Main options')
    main_group.add_argument('--config', type=str, default=DEFAULT_CONFIG,
                            help='Path to config YAML')
    main_group.add_argument('--debug', action='store_true',
                            help='Enable debug logging')
    main_group.add_argument('--list_devices', action='store_true',
                            help='List audio and MIDI devices and exit')
    main_group.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    audio = parser.add_argument_group('audio', 'Audio interface options')
    audio.add_argument('--input_device_index', type=int, metavar='N',
                       help='Audio input device index')
    audio.add_argument('--samplerate', type=int, metavar='RATE',
                       help='Output sample rate (default: device rate)')
    audio.add_argument('--blocksize', type=int, metavar='FRAMES',
                       help='Audio buffer size in frames')
    audio.add_argument('--mono_stereo', choices=['mono', 'stereo'],
                       help='Mono or stereo recording')
    audio.add_argument('--input_channel', type=int, metavar='CH',
                       help='First input channel to record (0-based)')

    midi = parser.add_argument_group('midi', 'MIDI interface options')
    midi.add_argument('--midi_output_name', type=str, nargs='+', metavar='NAME',
                      help='MIDI output device name(s)')
    midi.add_argument('--midi_channel', type=int, metavar='CH',
                      help='MIDI channel (0-15)')
    midi.add_argument('--note_range_start', type=str, metavar='NOTE',
                      help='Starting note (MIDI number 0-127 or note name like C2, A#4)')
    midi.add_argument('--note_range_end', type=str, metavar='NOTE',
                      help='Ending note (MIDI number 0-127 or note name like C7, G#6)')
    midi.add_argument('--note_range_interval', type=int, metavar='N',
                      help='Interval between notes (1=chromatic, 12=octaves)')
    midi.add_argument('--velocities', type=str, metavar='LIST',
                      help='Comma-separated velocities (e.g., "64,100,127")')
    midi.add_argument('--velocity_layers', type=int, metavar='N',
                      help='Number of velocity layers')
    midi.add_argument('--velocity_minimum', type=int, metavar='N',
                      help='Minimum velocity value (default: 1, range: 1-127)')
    midi.add_argument('--velocity_layers_split', type=str, metavar='SPLITS',
                      help='Comma-separated velocity split points (e.g., "40,100,127")')

    sampling = parser.add_argument_group('sampling', 'Sampling options')
    sampling.add_argument('--hold_time', type=float, metavar='SEC',
                          help='Note hold time in seconds')
    sampling.add_argument('--release_time', type=float, metavar='SEC',
                          help='Release tail time in seconds')
    sampling.add_argument('--pause_time', type=float, metavar='SEC',
                          help='Pause between samples in seconds')
    sampling.add_argument('--sample_name', type=str, metavar='NAME',
                          help='Sample file name prefix')
    sampling.add_argument('--output_folder', type=str, metavar='PATH',
                          help='Output folder path')
    sampling.add_argument('--capture_retries', type=int, metavar='N',
                          help='Retries when a recording fails to start')
    sampling.add_argument('--no_sfz', action='store_true',
                          help='Do not write an SFZ mapping file')
    sampling.add_argument('--test_mode', action='store_true',
                          help='Run without MIDI output, record synthetic noise')

    postprocessing = parser.add_argument_group('postprocessing', 'Post-processing options')
    postprocessing.add_argument('--normalize', action='store_true',
                                help='Normalize each sample after recording')
    postprocessing.add_argument('--normalize_mode', choices=['peak', 'rms'],
                                help='Normalization mode')
    postprocessing.add_argument('--target_db', type=float, metavar='DB',
                                help='Peak ceiling in dBFS (default: -0.1)')
    postprocessing.add_argument('--gain_db', type=float, metavar='DB',
                                help='Extra gain in dB after normalization')
    postprocessing.add_argument('--process_folder', type=str, metavar='PATH',
                                help='Process existing samples in folder instead of sampling')
    postprocessing.add_argument('--patch_normalize', action='store_true',
                                help='Normalize entire patch by one shared gain (keeps relative dynamics)')
    postprocessing.add_argument('--sample_normalize', action='store_true',
                                help='Normalize each sample independently')

    return parser


def load_config(config_path):
    """Load the YAML config. A missing file raises ConfigurationError."""
    if not os.path.exists(config_path):
        raise ConfigurationError(f"Config file not found: {config_path}")
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    return config


def build_config(config, args):
    """
    Apply command line overrides to a loaded config and convert note names.

    Args:
        config: Config dict from YAML
        args: Parsed arguments

    Returns:
        The updated config dict
    """
    def update_config_from_args(cfg, args_dict, section):
        if cfg.get(section) is None:
            cfg[section] = {}
        for k, v in args_dict.items():
            if v is not None:
                cfg[section][k] = v

    update_config_from_args(config, {
        'input_device_index': args.input_device_index,
        'samplerate': args.samplerate,
        'blocksize': args.blocksize,
        'mono_stereo': args.mono_stereo,
        'input_channel': args.input_channel,
    }, 'audio_interface')

    update_config_from_args(config, {
        'midi_output_names': args.midi_output_name,
        'midi_channel': args.midi_channel,
        'velocities': parse_int_list(args.velocities) if args.velocities else None,
        'velocity_layers': args.velocity_layers,
        'velocity_minimum': args.velocity_minimum,
        'velocity_layers_split': (parse_int_list(args.velocity_layers_split)
                                  if args.velocity_layers_split else None),
    }, 'midi_interface')

    # Layer count on the command line replaces a velocity list from the file
    if args.velocity_layers is not None and args.velocities is None:
        config['midi_interface'].pop('velocities', None)

    note_range = config['midi_interface'].get('note_range') or {}
    for key, value in (('start', args.note_range_start), ('end', args.note_range_end),
                       ('interval', args.note_range_interval)):
        if value is not None:
            note_range[key] = value
    for key in ('start', 'end'):
        if key in note_range:
            midi_num = note_name_to_midi(note_range[key])
            if midi_num is None:
                raise ConfigurationError(f"Invalid note_range {key}: {note_range[key]}")
            note_range[key] = midi_num
    config['midi_interface']['note_range'] = note_range

    update_config_from_args(config, {
        'hold_time': args.hold_time,
        'release_time': args.release_time,
        'pause_time': args.pause_time,
        'sample_name': args.sample_name,
        'output_folder': args.output_folder,
        'capture_retries': args.capture_retries,
        'write_sfz': False if args.no_sfz else None,
        'test_mode': True if args.test_mode else None,
    }, 'sampling')

    update_config_from_args(config, {
        'normalize': True if args.normalize else None,
        'normalize_mode': args.normalize_mode,
        'target_db': args.target_db,
        'gain_db': args.gain_db,
        'patch_normalize': True if args.patch_normalize else None,
        'sample_normalize': True if args.sample_normalize else None,
    }, 'postprocessing')

    return config


def list_devices():
    import mido
    import sounddevice as sd

    print("=== Audio devices ===")
    print(sd.query_devices())
    print("\n=== MIDI outputs ===")
    for name in mido.get_output_names():
        print(f"  {name}")


def process_folder(config, folder):
    """Batch postprocessing of existing samples. Returns exit code."""
    from samplebot.postprocess import PostProcessor

    folder = Path(folder)
    if not folder.exists():
        logging.error(f"Folder not found: {folder}")
        return 1

    sample_paths = sorted(folder.glob("*.wav"))
    if not sample_paths:
        logging.error(f"No WAV files found in {folder}")
        return 1

    print(f"Processing folder: {folder} ({len(sample_paths)} samples)")
    processor = PostProcessor(config.get('postprocessing'))
    try:
        processor.validate()
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        return 1
    processed = processor.process_samples(sample_paths)
    print(f"\nPostprocessing complete: {processed} of {len(sample_paths)} samples")
    return 0 if processed == len(sample_paths) else 1


def exit_code(state):
    """0 only for a run that reached Done with every sample recorded."""
    from samplebot.sampling.state_machine import DONE

    if state.phase != DONE or state.failed:
        return 1
    return 0


def run_sampling(config):
    """Run one sampling session. Returns exit code."""
    from samplebot.sampling import (
        AudioEngine, MIDINoteEngine, SamplingStateMachine, StatusDisplay, ThreadScheduler
    )

    test_mode = bool(config['sampling'].get('test_mode'))
    if test_mode:
        logging.info("TEST MODE: no MIDI output, recording synthetic noise")

    audio_engine = AudioEngine(config.get('audio_interface') or {}, test_mode=test_mode)
    midi_engine = MIDINoteEngine.from_config(config['midi_interface'], test_mode=test_mode)
    scheduler = ThreadScheduler()
    machine = SamplingStateMachine(config, midi_engine, audio_engine, scheduler=scheduler)
    display = StatusDisplay()
    machine.subscribe(display.update)

    try:
        if not machine.start_sampling():
            return 1
        try:
            # Poll so Ctrl-C is delivered on Windows too
            while not machine.wait(0.5):
                pass
        except KeyboardInterrupt:
            print("\nStopping after current sample (Ctrl-C again to abort)...")
            machine.stop_sampling()
            try:
                while not machine.wait(0.5):
                    pass
            except KeyboardInterrupt:
                machine.abort()
                machine.wait(5.0)
    finally:
        scheduler.shutdown()
        audio_engine.stop()
        midi_engine.close()

    state = machine.state
    for message in state.diagnostics:
        print(f"  ! {message}")
    print(f"\n{state.status} {len(state.completed)} samples in {machine.output_folder}")
    return exit_code(state)


def main():
    parser = get_arg_parser()
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format='%(asctime)s %(levelname)s: %(message)s')

    if args.list_devices:
        list_devices()
        sys.exit(0)

    try:
        config = build_config(load_config(args.config), args)
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.process_folder:
        print("=== SampleBot - Postprocessing ===")
        sys.exit(process_folder(config, args.process_folder))

    print("=== SampleBot ===")
    print(f"Config: {args.config}")
    sys.exit(run_sampling(config))


if __name__ == "__main__":
    main()

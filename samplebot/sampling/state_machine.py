"""
Sampling state machine.

Drives a sampling run one note at a time:

    Idle -> Arming -> Sustaining -> Releasing -> TailWaiting -> Finalizing
         -> (pause) -> Arming ... -> Done

Every step is a deferred call on the scheduler, so the machine never sleeps
and can be driven by a synthetic clock. Only one capture session exists at
a time. A stop request is honoured between notes: the note being recorded
always finishes and its file is closed before the run halts.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from samplebot.errors import CaptureStartError, ConfigurationError, NormalizationError
from samplebot.postprocess.processor import PostProcessor
from samplebot.sampling.capture_session import CaptureConfig, CaptureSession
from samplebot.sampling.channel_pipeline import MONO, STEREO
from samplebot.sampling.file_manager import FileManager, midi_note_name
from samplebot.sampling.sample_queue import (
    SampleEvent, build_sampling_queue, calculate_velocity_layers
)
from samplebot.sampling.scheduler import ThreadScheduler

IDLE = 'Idle'
ARMING = 'Arming'
SUSTAINING = 'Sustaining'
RELEASING = 'Releasing'
TAIL_WAITING = 'TailWaiting'
FINALIZING = 'Finalizing'
DONE = 'Done'

DEFAULT_VELOCITIES = [64, 100, 127]


class SamplingState:
    """Observable state of a sampling run. Subscribers get copies."""

    def __init__(self):
        self.queue: Tuple[SampleEvent, ...] = ()
        self.running = False
        self.current_event: Optional[SampleEvent] = None
        self.status = 'Ready'
        self.phase = IDLE
        self.progress = 0.0
        self.total = 0
        self.completed: List[Tuple[SampleEvent, Path]] = []
        self.failed: List[SampleEvent] = []
        self.diagnostics: List[str] = []

    def copy(self) -> 'SamplingState':
        state = SamplingState()
        state.__dict__.update(self.__dict__)
        state.completed = list(self.completed)
        state.failed = list(self.failed)
        state.diagnostics = list(self.diagnostics)
        return state

    def __repr__(self) -> str:
        return (f"<SamplingState {self.phase} running={self.running} "
                f"progress={self.progress:.2f} status={self.status!r}>")


class SamplingStateMachine:
    """
    Runs the sampling queue against a note sender and an audio source.

    Args:
        config: Full configuration (audio_interface, midi_interface,
            sampling and postprocessing sections)
        midi_engine: Note sender with send_note_on, send_note_off and panic
        audio_source: Audio input (see AudioEngine)
        scheduler: Deferred call scheduler (default: ThreadScheduler)
        file_manager: Sample naming (default: built from sampling config)
        postprocessor: Per-sample postprocessing (default: built from
            postprocessing config)
        session_factory: Creates a CaptureSession(audio_source, blocksize)
    """

    def __init__(self, config: Dict, midi_engine, audio_source, scheduler=None,
                 file_manager: FileManager = None, postprocessor: PostProcessor = None,
                 session_factory: Callable = CaptureSession):
        audio_config = config.get('audio_interface') or {}
        midi_config = config.get('midi_interface') or {}
        sampling_config = config.get('sampling') or {}
        postprocess_config = config.get('postprocessing') or {}

        self.midi_engine = midi_engine
        self.audio_source = audio_source
        self.scheduler = scheduler or ThreadScheduler()
        self.file_manager = file_manager or FileManager(sampling_config)
        self.postprocessor = postprocessor or PostProcessor(postprocess_config)
        self.session_factory = session_factory

        # Note range and velocity layers
        note_range = midi_config.get('note_range') or {}
        self.start_note = note_range.get('start', 36)
        self.end_note = note_range.get('end', 60)
        self.step = note_range.get('interval', 1)
        self.velocities = midi_config.get('velocities')
        self.velocity_layers = midi_config.get('velocity_layers')
        self.velocity_minimum = midi_config.get('velocity_minimum', 1)
        self.velocity_layers_split = midi_config.get('velocity_layers_split')
        if self.velocities is None and self.velocity_layers is None:
            self.velocities = list(DEFAULT_VELOCITIES)

        # Timing (seconds)
        self.hold_time = sampling_config.get('hold_time', 2.0)
        self.release_time = sampling_config.get('release_time', 1.0)
        self.settle_time = sampling_config.get('settle_time', 0.1)
        self.pause_time = sampling_config.get('pause_time', 0.2)
        self.capture_retries = sampling_config.get('capture_retries', 0)
        self.write_sfz = sampling_config.get('write_sfz', True)

        # Capture
        self.channel_layout = audio_config.get('mono_stereo', MONO)
        self.input_channel = audio_config.get('input_channel', 0)
        self.samplerate = audio_config.get('samplerate')
        self.blocksize = audio_config.get('blocksize')

        self.state = SamplingState()
        self._subscribers: List[Callable] = []
        self._session: Optional[CaptureSession] = None
        self._pending = None
        self._finished = threading.Event()
        self._finished.set()

    @property
    def output_folder(self) -> Optional[Path]:
        return self.file_manager.output_folder

    @output_folder.setter
    def output_folder(self, folder) -> None:
        self.file_manager.output_folder = Path(folder) if folder else None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable) -> Callable:
        """
        Call callback(state) with a copy of the state on every change.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _publish(self) -> None:
        snapshot = self.state.copy()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logging.exception("State subscriber failed")

    def _set_phase(self, phase: str, status: str = None) -> None:
        self.state.phase = phase
        if status is not None:
            self.state.status = status
        self._publish()

    def _diagnostic(self, message: str) -> None:
        logging.warning(message)
        self.state.diagnostics.append(message)

    def _schedule(self, delay: float, callback: Callable, *args) -> None:
        self._pending = self.scheduler.call_later(delay, self._run_step, callback, *args)

    def _run_step(self, callback: Callable, *args) -> None:
        """Run one lifecycle step. A failing step skips the current note."""
        try:
            callback(*args)
        except Exception as e:
            logging.exception(f"Sampling step {callback.__name__} failed")
            self._recover(f"{callback.__name__} failed: {e}")

    def _recover(self, reason: str) -> None:
        state = self.state
        event = state.current_event
        session, self._session = self._session, None

        if session is not None:
            # An interrupted take is not a valid sample
            try:
                session.discard()
            except Exception:
                logging.exception("Failed to discard capture session")
        if event is not None:
            try:
                self.midi_engine.send_note_off(event.note)
            except Exception:
                logging.exception("Failed to send note off")
            if not any(done == event for done, _ in state.completed):
                state.failed.append(event)
            self._diagnostic(f"Note {midi_note_name(event.note)} ({event.note}) "
                             f"vel {event.velocity} skipped: {reason}")
        else:
            self._diagnostic(reason)
        self._end_event()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _resolve_velocities(self) -> List[int]:
        if self.velocities is not None:
            return list(self.velocities)
        return calculate_velocity_layers(self.velocity_layers, self.velocity_minimum,
                                         self.velocity_layers_split)

    def _validate_settings(self) -> None:
        for name in ('hold_time', 'release_time', 'settle_time', 'pause_time'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigurationError(f"{name} must be a number of seconds >= 0, got {value!r}")
        if (isinstance(self.capture_retries, bool) or not isinstance(self.capture_retries, int)
                or self.capture_retries < 0):
            raise ConfigurationError(f"capture_retries must be a whole number >= 0, "
                                     f"got {self.capture_retries!r}")
        if self.channel_layout not in (MONO, STEREO):
            raise ConfigurationError(f"mono_stereo must be '{MONO}' or '{STEREO}', "
                                     f"got {self.channel_layout!r}")
        if (isinstance(self.input_channel, bool) or not isinstance(self.input_channel, int)
                or self.input_channel < 0):
            raise ConfigurationError(f"input_channel must be a channel index >= 0, "
                                     f"got {self.input_channel!r}")
        self.postprocessor.validate()

    def _reject(self, message: str) -> None:
        logging.error(message)
        self.state.status = message
        self.state.phase = IDLE
        self._publish()

    def start_sampling(self) -> bool:
        """
        Build the queue and start the run.

        Returns:
            False if the run could not start (already running, no output
            folder, invalid range or settings); the reason is in state.status
        """
        if self.state.running:
            logging.warning("Sampling already running")
            return False

        if self.file_manager.output_folder is None:
            self._reject("Please select an output folder.")
            return False

        try:
            self._validate_settings()
            velocities = self._resolve_velocities()
            queue = build_sampling_queue(self.start_note, self.end_note, self.step, velocities)
            self.file_manager.prepare_output_folder()
        except ConfigurationError as e:
            self._reject(f"Configuration error: {e}")
            return False
        except OSError as e:
            self._reject(f"Cannot use output folder {self.file_manager.output_folder}: {e}")
            return False

        state = self.state
        state.queue = tuple(queue)
        state.total = len(queue)
        state.completed = []
        state.failed = []
        state.diagnostics = []
        state.current_event = None
        state.progress = 0.0
        state.running = True
        state.status = "Starting..."
        self._finished.clear()

        logging.info(f"Sampling range: Note {self.start_note}-{self.end_note}, "
                     f"interval {self.step}, velocities {velocities}: {len(queue)} samples")
        logging.info(f"Output folder: {self.file_manager.output_folder}")

        if not queue:
            logging.warning("Nothing to sample - note range or velocity list is empty")
            self._finish()
            return True

        self._publish()
        self._schedule(0.0, self._advance)
        return True

    def stop_sampling(self) -> None:
        """
        Request a stop after the current note.

        The note being recorded runs to the end and its file is closed.
        A panic note off goes out as the next control step so nothing keeps
        sounding.
        """
        if not self.state.running:
            return

        logging.info("Stop requested - finishing current sample")
        self.state.running = False
        event = self.state.current_event
        self.scheduler.call_soon(self.midi_engine.panic, event.note if event else None)
        self.scheduler.call_soon(self._on_stop_requested)

    def abort(self) -> None:
        """
        Stop right away: cancel pending steps and close the current file.

        The file being recorded is closed as a valid but shortened sample.
        """
        self.stop_sampling()
        self.scheduler.call_soon(self._abort_now)

    def wait(self, timeout: float = None) -> bool:
        """Block until the run is Done or stopped. Returns False on timeout."""
        return self._finished.wait(timeout)

    def _on_stop_requested(self) -> None:
        if self.state.phase not in (IDLE, DONE):
            self.state.status = "Stopping after current sample..."
            self._publish()

    def _abort_now(self) -> None:
        if self._finished.is_set():
            return
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        session, self._session = self._session, None
        if session is not None:
            session.close()
            self._diagnostic(f"Aborted while recording {session.path.name}")
        self._finish(stopped=True)

    # ------------------------------------------------------------------
    # Per-note lifecycle (runs on the scheduler)
    # ------------------------------------------------------------------

    def _advance(self) -> None:
        # Stop requests are only honoured here, between notes
        state = self.state
        if not state.running:
            self._finish(stopped=True)
            return
        if not state.queue:
            self._finish()
            return

        event = state.queue[0]
        state.queue = state.queue[1:]
        state.current_event = event
        self._arm(event, 0)

    def _arm(self, event: SampleEvent, attempt: int) -> None:
        path = self.file_manager.sample_path(event)
        name = midi_note_name(event.note)
        self._set_phase(ARMING, f"Sampling {name} ({event.note}) Vel {event.velocity}")
        logging.info(f"Sampling: Note={name} ({event.note}), Vel={event.velocity}, "
                     f"Hold={self.hold_time}s, Release={self.release_time}s")

        session = self.session_factory(self.audio_source, self.blocksize)
        config = CaptureConfig(path, self.channel_layout, self.input_channel, self.samplerate)
        try:
            session.open(path, config)
        except CaptureStartError as e:
            if attempt < self.capture_retries and self.state.running:
                self._diagnostic(f"Failed to start recording {path.name} "
                                 f"(attempt {attempt + 1}): {e} - retrying")
                self._schedule(self.pause_time, self._arm, event, attempt + 1)
                return
            self._diagnostic(f"Failed to start recording {path.name}: {e} - skipped")
            self.state.failed.append(event)
            self._end_event()
            return

        self._session = session
        self._schedule(self.settle_time, self._sustain, event)

    def _sustain(self, event: SampleEvent) -> None:
        self._set_phase(SUSTAINING)
        self.midi_engine.send_note_on(event.note, event.velocity)
        self._schedule(self.hold_time, self._release, event)

    def _release(self, event: SampleEvent) -> None:
        self._set_phase(RELEASING)
        self.midi_engine.send_note_off(event.note)
        self._set_phase(TAIL_WAITING)
        self._schedule(self.release_time, self._finalize, event)

    def _finalize(self, event: SampleEvent) -> None:
        self._set_phase(FINALIZING)
        session = self._session
        session.close()
        self._session = None
        path = session.path

        if session.dropped_buffers:
            self._diagnostic(f"{path.name}: {session.dropped_buffers} audio buffers dropped "
                             f"({session.last_error})")
        if session.frames_written == 0:
            self._diagnostic(f"{path.name}: no audio captured")
        else:
            logging.info(f"Recorded {path.name}: {session.frames_written} frames, "
                         f"peak level {session.peak_level_db:.1f}dB")

        if self.postprocessor.enabled and session.frames_written:
            try:
                self.postprocessor.process_sample(path)
            except NormalizationError as e:
                self._diagnostic(f"Normalization failed for {path.name}: {e}")
            except Exception as e:
                logging.exception(f"Postprocessing {path.name} failed")
                self._diagnostic(f"Postprocessing failed for {path.name}: {e} - file kept as recorded")

        self.state.completed.append((event, path))
        self._end_event()

    def _end_event(self) -> None:
        state = self.state
        done = len(state.completed) + len(state.failed)
        state.progress = done / state.total if state.total else 1.0
        state.current_event = None
        state.status = f"Sampled {done} of {state.total}"
        self._publish()
        self._schedule(self.pause_time, self._advance)

    def _finish(self, stopped: bool = False) -> None:
        state = self.state
        state.running = False
        state.current_event = None
        self._pending = None

        if stopped:
            state.phase = IDLE
            state.status = "Stopped"
            logging.info(f"Sampling stopped: {len(state.completed)} of {state.total} "
                         f"samples recorded")
        else:
            state.phase = DONE
            state.status = "Done!"
            state.progress = 1.0
            logging.info(f"Sampling complete: {len(state.completed)} samples recorded, "
                         f"{len(state.failed)} skipped")
            if self.write_sfz and state.completed:
                self.file_manager.generate_sfz(state.completed)

        self._publish()
        self._finished.set()

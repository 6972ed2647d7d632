#!/usr/bin/env python3
"""Alarm CLI - count down to a clock time, then ring a sound file until stopped.

Usage: alarm 7:00am [-f ~/sounds/alarm.mp3]

Ctrl+C during the countdown cancels the alarm; Ctrl+C while ringing stops it.
"""

import argparse
import os
import signal
import sys
import threading
import time
from concurrent import futures
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, time as clock_time, timedelta
from functools import partial
from typing import Optional, Tuple

import soundfile as sf

DEFAULT_SOUND_FILE = os.environ.get("ALARM_SOUND_FILE", "~/sounds/alarm.mp3")
SOUND_FORMATS = (".mp3", ".flac", ".wav")
TIME_FORMATS = ("%I:%M%p", "%I:%M %p", "%H:%M")

TICK_SECONDS = 1.0
BAR_WIDTH = 70
ERASE_LINE = "\r\033[K"

INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)
CANCELLED_MESSAGE = " Alarm cancelled.\n"
STOPPED_MESSAGE = " Alarm stopped.\n"


# ── Errors ───────────────────────────────────────────────────────────

class AlarmError(Exception):
    """Any failure that aborts the run with exit status 1."""


class ArgumentError(AlarmError):
    pass


class FileResolutionError(AlarmError):
    pass


class UnsupportedFormatError(AlarmError):
    pass


class DecodeError(AlarmError):
    pass


class TimeParseError(AlarmError):
    pass


class PlaybackError(AlarmError):
    pass


# ── Progress Bar ─────────────────────────────────────────────────────

class Bar:
    """Single-line progress bar redrawn in place on the terminal."""

    def __init__(self, total: float, width: int = BAR_WIDTH, out=None,
                 head=">", empty="-", fill="=", left="[", right="]"):
        if total <= 0:
            raise ValueError(f"total must be positive, got {total}")
        self.total = total
        self.current = 0
        self.width = width
        self.head = head
        self.empty = empty
        self.fill = fill
        self.left = left
        self.right = right
        self.out = out if out is not None else sys.stdout

    def increment(self) -> bool:
        """Advance one step. Returns True once current has reached total."""
        self.current += 1
        return self.current >= self.total

    def place(self) -> int:
        return int(self.width * self.current / self.total)

    def line(self) -> str:
        place = self.place()
        return (self.left + self.fill * place + self.head
                + self.empty * (self.width - place) + self.right)

    def line_done(self) -> str:
        return self.left + self.fill * self.width + self.head + self.right

    def flush(self):
        self.out.write(ERASE_LINE)

    def render(self):
        self.flush()
        self.out.write(self.line())
        self.out.flush()

    def render_complete(self):
        self.flush()
        self.out.write(self.line_done() + "\n")
        self.out.flush()


# ── Cancellation ─────────────────────────────────────────────────────

class CancelSignal:
    """One-shot broadcast stop event.

    Backed by a Future so it can be raced against other futures with
    ``concurrent.futures.wait``. Every waiter is released when it fires;
    firing again is a silent no-op.
    """

    def __init__(self):
        self.future = Future()
        self._lock = threading.Lock()

    def fire(self) -> bool:
        """Fire the signal. Returns True only for the call that fired it."""
        with self._lock:
            if self.future.done():
                return False
            self.future.set_result(None)
            return True

    def fired(self) -> bool:
        return self.future.done()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until fired or ``timeout`` elapses. Returns whether it fired."""
        futures.wait([self.future], timeout=timeout)
        return self.future.done()


class InterruptSource:
    """Fires a CancelSignal on SIGINT/SIGTERM for the duration of one phase.

    Handlers are installed on ``__enter__`` and the previous ones restored on
    ``__exit__``, so each phase owns its own listener. ``trip()`` is the
    programmatic trigger; the signal handler only schedules it on a listener
    thread, which is joined when the phase ends.
    """

    def __init__(self, cancel: CancelSignal, message: str, out=None,
                 signums=INTERRUPT_SIGNALS):
        self.cancel = cancel
        self.message = message
        self.out = out if out is not None else sys.stdout
        self.signums = tuple(signums)
        self._previous = {}
        self._listeners = []

    def __enter__(self):
        for signum in self.signums:
            self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, *exc_info):
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()
        for listener in self._listeners:
            listener.join()
        self._listeners.clear()
        return False

    def _handle(self, signum, frame):
        # Handlers run on the main thread between bytecodes and must not take
        # a lock the interrupted code may already hold.
        listener = threading.Thread(target=self.trip, daemon=True)
        self._listeners.append(listener)
        listener.start()

    def trip(self) -> bool:
        """Fire the signal, printing the phase message if this call fired it."""
        if not self.cancel.fire():
            return False
        print(self.message, end="", file=self.out, flush=True)
        return True


# ── Countdown ────────────────────────────────────────────────────────

class Countdown:
    """Redraws the bar once per tick until the wait is nearly over or cancelled.

    Stops one tick short of the total so the alarm's own timer, not the bar,
    drives the switch to ringing.
    """

    RUNNING = "RUNNING"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    def __init__(self, bar: Bar, cancel: CancelSignal, tick: float = TICK_SECONDS):
        self.bar = bar
        self.cancel = cancel
        self.tick = tick
        self.state = self.RUNNING

    def run(self) -> str:
        next_tick = time.monotonic() + self.tick
        while self.bar.current < self.bar.total - 1:
            self.bar.render()
            if self.cancel.wait(max(0.0, next_tick - time.monotonic())):
                self.state = self.CANCELLED
                return self.state
            self.bar.increment()
            next_tick += self.tick

        self.bar.render_complete()
        self.state = self.EXPIRED
        return self.state


# ── Sound ────────────────────────────────────────────────────────────

def resolve_file(path: str) -> str:
    """Expand ``~`` and make ``path`` absolute; it must exist."""
    resolved = os.path.abspath(os.path.expanduser(path))
    if not os.path.exists(resolved):
        raise FileResolutionError(f"file does not exist: {path}")
    return resolved


def decode_sound_file(path: str) -> sf.SoundFile:
    """Open ``path`` for sequential decoding. Format is chosen by extension."""
    ext = os.path.splitext(path)[1].lower()
    if ext not in SOUND_FORMATS:
        raise UnsupportedFormatError(
            f"only [mp3, flac, wav] supported: unable to use file '{os.path.basename(path)}'"
        )
    try:
        sound = sf.SoundFile(path)
    except (RuntimeError, OSError) as e:
        # libsndfile errors are RuntimeError subclasses
        raise DecodeError(f"failed to decode sound file: {e}") from e
    if sound.frames == 0:
        sound.close()
        raise DecodeError(f"failed to decode sound file: no audio in '{os.path.basename(path)}'")
    return sound


class Player:
    """Streams one decoded sound at a time to the default output device."""

    def __init__(self, device=None):
        self.device = device
        self.error: Optional[Exception] = None
        self._stream = None

    def play(self, sound: sf.SoundFile, on_done):
        """Start playing ``sound``; ``on_done()`` runs when the stream finishes."""
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise PlaybackError(
                f"audio output unavailable ({e}). Install PortAudio and: pip install sounddevice"
            ) from e

        self.error = None

        def fill(outdata, frames, time_info, status):
            try:
                data = sound.read(frames, dtype="float32", always_2d=True)
            except RuntimeError as e:
                self.error = e
                raise sd.CallbackAbort
            outdata[:len(data)] = data
            if len(data) < frames:
                outdata[len(data):] = 0
                raise sd.CallbackStop

        try:
            self._stream = sd.OutputStream(
                samplerate=sound.samplerate,
                channels=sound.channels,
                dtype="float32",
                device=self.device,
                callback=fill,
                finished_callback=on_done,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            self.close()
            raise PlaybackError(f"failed to open audio output: {e}") from e

    def close(self):
        """Stop playback if still running and release the output device."""
        if self._stream is not None:
            self._stream.close(ignore_errors=True)
            self._stream = None


# ── Clock Time ───────────────────────────────────────────────────────

def parse_clock_time(value: str) -> clock_time:
    text = value.strip().upper()
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise TimeParseError(f"failed to parse time: '{value}'")


def wait_time(request: str, now: Optional[datetime] = None) -> Tuple[datetime, timedelta]:
    """Return the next occurrence of ``request`` and how long until it.

    A time at or before ``now`` means the same time tomorrow.
    """
    now = now or datetime.now()
    target = datetime.combine(now.date(), parse_clock_time(request))
    if target <= now:
        target += timedelta(days=1)
    return target, target - now


# ── Alarm ────────────────────────────────────────────────────────────

class Alarm:
    """Owns one alarm run: the countdown wait, then the ring loop.

    ``interrupts`` builds the cancellation source for a phase from
    ``(cancel, message, out)``; each phase gets a fresh CancelSignal.
    """

    def __init__(self, path: str, seconds: float, player=None,
                 interrupts=InterruptSource, out=None, tick: float = TICK_SECONDS):
        self.path = path
        self.seconds = seconds
        self.player = player or Player()
        self.out = out if out is not None else sys.stdout
        self.tick = tick
        self._interrupts = interrupts

    def wait(self) -> bool:
        """Count down to the alarm time. Returns False if cancelled first."""
        cancel = CancelSignal()
        countdown = Countdown(Bar(self.seconds / self.tick, out=self.out), cancel, self.tick)
        with self._interrupts(cancel, CANCELLED_MESSAGE, self.out):
            with ThreadPoolExecutor(max_workers=1) as pool:
                done = pool.submit(countdown.run)
                # whoever fires the signal first decides the outcome
                expired = not cancel.wait(self.seconds) and cancel.fire()
                done.result()
        return expired

    def ring(self, sound: sf.SoundFile):
        """Play ``sound`` on a loop, re-decoding each cycle, until interrupted."""
        cancel = CancelSignal()
        with self._interrupts(cancel, STOPPED_MESSAGE, self.out):
            while True:
                print("Sounding Alarm!", file=self.out, flush=True)

                finished = Future()
                try:
                    self.player.play(sound, partial(finished.set_result, None))
                    futures.wait([finished, cancel.future], return_when=futures.FIRST_COMPLETED)
                finally:
                    self.player.close()
                    sound.close()

                if cancel.fired():
                    return
                if self.player.error is not None:
                    raise DecodeError(f"failed to decode sound file: {self.player.error}")

                sound = decode_sound_file(self.path)


# ── Main ─────────────────────────────────────────────────────────────

class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise ArgumentError(message)


def parse_args(argv=None):
    parser = _Parser(
        prog="alarm",
        description="Simple alarm that takes as input a clock time hh:mm(am/pm) that will "
                    "play an [mp3, flac, wav] sound file (e.g. 7:00am)",
    )
    parser.add_argument("time", nargs="*", help="Alarm time, e.g. 7:00am or 19:00")
    parser.add_argument(
        "-f", "--file",
        default=DEFAULT_SOUND_FILE,
        help=f"Set sound file path (default: {DEFAULT_SOUND_FILE})",
    )
    args = parser.parse_args(argv)

    if len(args.time) != 1:
        raise ArgumentError("please supply one argument as the time for alarm (e.g. 7:00am)")
    args.time = args.time[0]

    return args


def main(argv=None, out=None, player=None, interrupts=InterruptSource) -> int:
    out = out if out is not None else sys.stdout
    try:
        args = parse_args(argv)
        path = resolve_file(args.file)
        sound = decode_sound_file(path)
        try:
            target, wait = wait_time(args.time)
            wait_rounded = timedelta(seconds=int(wait.total_seconds()))
            print(f"Setting alarm for: {target:%Y-%m-%d %H:%M:%S} (in {wait_rounded})", file=out)
            print(f"Using sound file: {args.file}", file=out, flush=True)

            alarm = Alarm(path, wait.total_seconds(), player=player,
                          interrupts=interrupts, out=out)
            if not alarm.wait():
                return 0
            alarm.ring(sound)
        finally:
            sound.close()
    except AlarmError as e:
        print(f"error running alarm: {e}", file=out)
        return 1
    except KeyboardInterrupt:
        # Ctrl+C outside a phase listener, e.g. while decoding or between phases
        print(file=out)
        return 0
    return 0


def cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(cli())

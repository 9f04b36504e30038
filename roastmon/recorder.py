"""
Roast recording loop.

While recording, a one-second sampling tick reads the most recent live
temperature, derives the rate of rise and appends a sample. A faster display
tick only refreshes the operator's view and never adds data. Stopping
cancels both ticks and turns the buffer into a RoastSession.

The recorder samples whatever temperature was last received; it does not
try to line its ticks up with the probe's own one-second replies.
"""

import logging
import threading
import time
import uuid
from datetime import datetime, timezone

from roastmon.errors import AlreadyRecording
from roastmon.scheduling import PeriodicTask
from roastmon.sessions import RoastSample, RoastSession, clean_text, clean_weight
from roastmon.telemetry import READING_EVENT

SAMPLE_INTERVAL = 1.0
DISPLAY_INTERVAL = 0.1

# RoR compares against the sample taken 29-30 s earlier and doubles the
# difference, giving degrees per minute.
LOOKBACK_SECONDS = 30.0
LOOKBACK_WINDOW = 1.0

DEFAULT_BEAN_LABEL = "Roast"

recorder_logger = logging.getLogger("roastmon.recorder")


def rate_of_rise(samples, elapsed, temperature):
    """
    Rate of rise for a new sample taken at ``elapsed`` seconds.

    Searches ``samples`` newest first for one whose age lies in (29, 30]
    seconds and returns twice the temperature change since it. Returns 0.0
    when there is no such sample, which is always the case for the first 30
    seconds of a roast.
    """
    for sample in reversed(samples):
        age = elapsed - sample.elapsed_seconds
        if LOOKBACK_SECONDS - LOOKBACK_WINDOW < age <= LOOKBACK_SECONDS:
            return (temperature - sample.temperature_c) * 2
        if age > LOOKBACK_SECONDS:
            break
    return 0.0


def default_session_name(bean_name, created_at: datetime) -> str:
    label = bean_name or DEFAULT_BEAN_LABEL
    return f"{label} {created_at.astimezone():%Y-%m-%d %H:%M}"


class RoastRecorder:
    """
    Samples live readings into a roast session.

    One recorder holds at most one active recording. Readings come from a
    TelemetryHub subscription when ``hub`` is given; otherwise the owner sets
    ``current_temp`` directly.
    """

    def __init__(
        self,
        hub=None,
        clock=time.monotonic,
        wall_clock=None,
        task_factory=None,
        sample_interval=SAMPLE_INTERVAL,
        display_interval=DISPLAY_INTERVAL,
        on_sample=None,
        on_display=None,
    ):
        """
        Args:
            hub (TelemetryHub, optional): Source of live temperature readings.
            clock (callable): Monotonic seconds, used for elapsed time.
            wall_clock (callable, optional): Returns an aware datetime for createdAt.
            task_factory (callable, optional): ``(interval, callback, name)`` -> unstarted
                                               task with start()/cancel().
            sample_interval (float): Seconds between samples.
            display_interval (float): Seconds between display refreshes.
            on_sample (callable, optional): Called with each new RoastSample.
            on_display (callable, optional): Called with ``(elapsed, temperature, ror)``.
                Both callbacks run with the recorder lock held and never after
                stop() or close() has returned.
        """
        self._clock = clock
        self._wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))
        self._task_factory = task_factory or (
            lambda interval, callback, name: PeriodicTask(interval, callback, name=name)
        )
        self.sample_interval = sample_interval
        self.display_interval = display_interval
        self.on_sample = on_sample
        self.on_display = on_display

        self._lock = threading.RLock()
        self._samples: list[RoastSample] = []
        self._t0 = None
        self._tasks = []
        self.recording = False
        self.current_temp = 0.0
        self.current_ror = 0.0

        self._subscription = hub.subscribe(self._on_telemetry) if hub is not None else None

    @property
    def samples(self):
        with self._lock:
            return tuple(self._samples)

    def elapsed(self) -> float:
        with self._lock:
            if not self.recording:
                return 0.0
            return self._clock() - self._t0

    def start(self):
        """
        Begin a new recording with an empty buffer.

        Raises:
            AlreadyRecording: If a recording is already active.
        """
        with self._lock:
            if self.recording:
                raise AlreadyRecording("a roast is already being recorded")
            self._samples = []
            self._t0 = self._clock()
            self.current_ror = 0.0
            self.recording = True
            self._tasks = [
                self._task_factory(self.sample_interval, self.tick, "roast-sample"),
                self._task_factory(self.display_interval, self._refresh_display, "roast-display"),
            ]
            for task in self._tasks:
                task.start()
        recorder_logger.info("Roast recording started")

    def tick(self):
        """Take one sample. Returns the new RoastSample, or None when idle."""
        with self._lock:
            if not self.recording:
                return None
            elapsed = self._clock() - self._t0
            if self._samples and elapsed <= self._samples[-1].elapsed_seconds:
                recorder_logger.debug(f"Skipping sample, clock did not advance ({elapsed})")
                return None
            temperature = self.current_temp
            ror = rate_of_rise(self._samples, elapsed, temperature)
            sample = RoastSample(elapsed_seconds=elapsed, temperature_c=temperature, rate_of_rise=ror)
            self._samples.append(sample)
            self.current_ror = ror

            # Called under the lock so stop() cannot return while it runs.
            if self.on_sample:
                self.on_sample(sample)
        return sample

    def stop(self, bean_name=None, bean_weight_grams=None):
        """
        End the recording.

        Safe to call when idle or with no samples.

        Returns:
            RoastSession | None: The finalized session, or None if nothing was sampled.
        """
        with self._lock:
            was_recording = self.recording
            self.recording = False
            self._cancel_tasks()
            samples, self._samples = self._samples, []

        if was_recording:
            recorder_logger.info(f"Roast recording stopped with {len(samples)} samples")
        if not samples:
            return None

        created = self._wall_clock()
        bean_name = clean_text(bean_name)
        session = RoastSession(
            id=str(uuid.uuid4()),
            name=default_session_name(bean_name, created),
            created_at=created.isoformat(),
            total_time_seconds=samples[-1].elapsed_seconds,
            samples=tuple(samples),
            bean_name=bean_name,
            bean_weight_grams=clean_weight(bean_weight_grams),
        )
        return session

    def close(self):
        """Tear down: cancel ticks, drop the buffer and stop listening to the hub."""
        with self._lock:
            self.recording = False
            self._cancel_tasks()
            self._samples = []
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def _on_telemetry(self, event, payload):
        if event == READING_EVENT:
            self.current_temp = float(payload)

    def _refresh_display(self):
        with self._lock:
            if not self.recording:
                return
            elapsed = self._clock() - self._t0
            if self.on_display:
                self.on_display(elapsed, self.current_temp, self.current_ror)

    def _cancel_tasks(self):
        for task in self._tasks:
            task.cancel()
        self._tasks = []

import logging
import threading

scheduling_logger = logging.getLogger("roastmon.scheduling")


def spawn_thread(target, *args):
    """Run target(*args) on a daemon thread and return the thread."""
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


class PeriodicTask:
    """
    Repeating timer that calls ``callback`` every ``interval`` seconds.

    The task does nothing until start() is called. Once cancel() returns no
    new callback invocation begins, so owners can treat cancellation as
    synchronous. A callback that raises is logged and the task keeps going.
    """

    def __init__(self, interval, callback, spawn=None, name="periodic"):
        """
        Args:
            interval (float): Seconds between callback invocations.
            callback (callable): Zero-argument function to call on each tick.
            spawn (callable, optional): Runs the loop in the background. Receives the
                                        loop function. Defaults to a daemon thread.
            name (str, optional): Label used in log messages.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(interval)
        self.callback = callback
        self.name = name
        self._spawn = spawn or spawn_thread
        self._cancelled = threading.Event()
        self._started = False

    @property
    def active(self) -> bool:
        return self._started and not self._cancelled.is_set()

    def start(self):
        if self._started:
            return
        self._started = True
        self._spawn(self._run)

    def cancel(self):
        self._cancelled.set()

    def _run(self):
        while not self._cancelled.wait(self.interval):
            if self._cancelled.is_set():
                break
            try:
                self.callback()
            except Exception:
                scheduling_logger.exception(f"Periodic task {self.name} callback failed")

import threading
from datetime import timedelta
from typing import Callable, Union

MIN_POLL_INTERVAL = timedelta(milliseconds=100)


class Poller(threading.Thread):
    """
    Runs `execute` repeatedly on a daemon thread until `stop()` is called.

    `interval` is either a fixed timedelta or a callable returning one; the
    callable is consulted before every wait, so the caller can stretch the
    interval (e.g. exponential backoff) between runs. Intervals below
    MIN_POLL_INTERVAL are raised to it. With `run_immediately` the first
    run happens as soon as the thread starts instead of after one interval.
    """

    def __init__(
        self,
        interval: Union[timedelta, Callable[[], timedelta]],
        execute: Callable,
        *args,
        run_immediately: bool = False,
        **kwargs,
    ):
        threading.Thread.__init__(self)
        self.daemon = True
        self.stopped = threading.Event()
        self.interval = interval
        self.execute = execute
        self.run_immediately = run_immediately
        self.args = args
        self.kwargs = kwargs

    def next_interval(self) -> timedelta:
        interval = self.interval() if callable(self.interval) else self.interval
        return max(interval, MIN_POLL_INTERVAL)

    def stop(self):
        self.stopped.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join()

    def run(self):
        if self.run_immediately and not self.stopped.is_set():
            self.execute(*self.args, **self.kwargs)
        while not self.stopped.wait(self.next_interval().total_seconds()):
            self.execute(*self.args, **self.kwargs)

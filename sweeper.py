# sweeper.py
import logging
import time

logger = logging.getLogger("machinectl.sweeper")


class HoldSweeper:
    """Periodically returns machines whose reservation hold expired to AVAILABLE."""

    def __init__(self, lifecycle, poll_interval=5.0, stop_event=None):
        self.lifecycle = lifecycle
        self.poll_interval = poll_interval
        self.stop_event = stop_event  # threading.Event() passed in by CLI
        self.released_total = 0

    def run(self):
        logger.info("Hold sweeper started (interval=%ss)", self.poll_interval)
        while not (self.stop_event and self.stop_event.is_set()):
            self.run_once()
            if self.stop_event:
                self.stop_event.wait(self.poll_interval)
            else:
                time.sleep(self.poll_interval)
        logger.info("Hold sweeper stopped after releasing %d hold(s)", self.released_total)

    def run_once(self, now=None):
        released = self.lifecycle.sweep_expired_holds(now)
        self.released_total += len(released)
        return released

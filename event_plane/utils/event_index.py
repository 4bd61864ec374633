import logging
from typing import NamedTuple

logger = logging.getLogger(__name__)


class EventKey(NamedTuple):
    run: int
    event: int


class EventIndex:
    """
    (run number, event number) -> row offset. Duplicate keys are logged and
    the first-seen row is kept.
    """

    def __init__(self, run_numbers, event_numbers):
        self.rows = {}
        self.n_duplicates = 0
        for row, (run, event) in enumerate(zip(run_numbers, event_numbers)):
            key = EventKey(int(run), int(event))
            if key in self.rows:
                self.n_duplicates += 1
                logger.warning("Duplicate event-plane key for RUN %d EVENT %d (rows %d and %d); keeping row %d",
                               key.run, key.event, self.rows[key], row, self.rows[key])
                continue
            self.rows[key] = row
        logger.info("Indexed %d events (%d duplicate keys)", len(self.rows), self.n_duplicates)

    def __len__(self):
        return len(self.rows)

    def __contains__(self, key):
        return key in self.rows

    def lookup(self, run, event):
        """Row offset for (run, event), or None if absent."""
        return self.rows.get(EventKey(int(run), int(event)))

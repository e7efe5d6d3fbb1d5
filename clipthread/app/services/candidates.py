from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from clipthread.app.db.store import SessionStore
from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.models.session import Session


class CandidateFinder:
    def __init__(self, store: SessionStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def find_candidates(self, event: CaptureEvent, window: timedelta) -> List[Session]:
        """
        Sessions touched within `window`, most recent first. A session that
        already holds this event is tried first so a re-delivered event lands
        where it did before.
        """
        sessions = self.store.list_candidate_sessions(self._clock() - window)
        holding = [s for s in sessions if event.id in s.member_order]
        return holding + [s for s in sessions if event.id not in s.member_order]

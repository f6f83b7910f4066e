import json
import logging
from pathlib import Path
from typing import List

from overlay.models import Session

logger = logging.getLogger(__name__)


def sort_newest_first(sessions: List[Session]) -> List[Session]:
    return sorted(sessions, key=lambda s: s.created_at, reverse=True)


def upsert_session(history: List[Session], session: Session) -> List[Session]:
    """Replace the entry with ``session.id`` or insert it, then re-sort newest-first."""
    out = [s for s in history if s.id != session.id]
    out.append(session)
    return sort_newest_first(out)


class HistoryStore:
    """Whole-collection JSON store for past sessions (``chat_history.json``)."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[Session]:
        try:
            if not self.path.is_file():
                return []
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("Failed to load history")
            return []
        if not isinstance(data, list):
            logger.warning("History file %s is not a list; ignoring it", self.path)
            return []

        sessions: List[Session] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                sessions.append(Session.from_dict(item))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed history entry")
        return sort_newest_first(sessions)

    def save(self, sessions: List[Session]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps([s.to_dict() for s in sessions], indent=2), encoding="utf-8")
            tmp_path.replace(self.path)
        except Exception:
            logger.exception("Failed to save history")

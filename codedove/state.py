"""Attachment state shared between the chat layer and the watcher manager: which assistant session (and working directory) the bridge is currently attached to."""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .logs import log_message


@dataclass(frozen=True)
class AttachedSession:
    """The session the bridge injects into"""
    session_id: str
    cwd: str

    @property
    def short_id(self) -> str:
        return self.session_id[:8]


class AttachmentStore:
    """Durable record of the attached session.

    Stored as two lines, ``session_id`` then ``cwd``, so hook scripts can read
    it with plain shell tools.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> Optional[AttachedSession]:
        """Return the attached session, or None when nothing is attached"""
        try:
            content = self.path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as e:
            log_message("WARNING", f"Could not read attachment {self.path}: {e}")
            return None

        lines = content.strip().split('\n')
        session_id = lines[0].strip() if lines else ''
        if not session_id:
            return None
        cwd = lines[1].strip() if len(lines) > 1 and lines[1].strip() else os.path.expanduser('~')
        return AttachedSession(session_id=session_id, cwd=cwd)

    def save(self, session_id: str, cwd: str) -> bool:
        """Persist the attachment; failures are logged and reported as False"""
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_text(f"{session_id}\n{cwd}", encoding='utf-8')
            except OSError as e:
                log_message("WARNING", f"Could not persist attachment {session_id[:8]} for {cwd}: {e}")
                return False
        log_message("DEBUG", f"[STATE] attached {session_id[:8]} ({cwd})")
        return True

    def clear(self) -> None:
        """Detach"""
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                log_message("WARNING", f"Could not remove attachment {self.path}: {e}")

"""
valleydrop/store.py

Durable session storage.

One JSON record per session at <base_dir>/sessions/<session_id>.json.
Writes go to a temp file in the same directory, are fsynced, and are
renamed over the record with os.replace, so a reader sees either the old
record or the new one and never a partial write.

The store is the sole source of truth for session state. Nothing caches
sessions in memory across calls.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import List, Optional, Union

from .errors import CorruptStateError, SessionNotFound
from .session import AirdropSession

logger = logging.getLogger("valleydrop.store")

RECORD_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.\-]+$")


class SessionStore:
    """
    File-backed session store.

    Usage:
        store = SessionStore("./airdrops/sessions")
        store.save(session)
        session = store.load(session.session_id)
        for session in store.list_all():
            ...
    """

    def __init__(self, sessions_dir: Union[str, Path]):
        self.sessions_dir = Path(sessions_dir)

    def _path(self, session_id: str) -> Path:
        if not session_id or not _SAFE_ID.match(session_id) or session_id.startswith("."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / f"{session_id}{RECORD_SUFFIX}"

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()

    def save(self, session: AirdropSession) -> None:
        """
        Atomically persist a session.

        A transition has not happened until this returns. OSErrors propagate.
        """
        path = self._path(session.session_id)
        self.sessions_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

        session.touch()
        data = json.dumps(session.to_dict(), indent=2)
        tmp = path.with_name(path.name + TEMP_SUFFIX)

        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if tmp.exists():
                tmp.unlink()
            raise

        self._fsync_dir()
        logger.debug(f"Saved session {session.session_id} at stage {session.stage}")

    def _fsync_dir(self) -> None:
        try:
            dir_fd = os.open(self.sessions_dir, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    def load(self, session_id: str) -> AirdropSession:
        """
        Load a session.

        Raises:
            SessionNotFound: no record for this id
            CorruptStateError: record exists but cannot be parsed
        """
        path = self._path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise SessionNotFound(session_id)
        except OSError as e:
            raise CorruptStateError(f"Unreadable session record {path}: {e}", session_id)

        try:
            session = AirdropSession.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            raise CorruptStateError(f"Corrupt session record {path}: {e}", session_id)

        if session.session_id != session_id:
            raise CorruptStateError(
                f"Session record {path} holds id {session.session_id!r}",
                session_id,
            )
        return session

    def try_load(self, session_id: str) -> Optional[AirdropSession]:
        """Load a session, or None if missing. Corrupt records still raise."""
        try:
            return self.load(session_id)
        except SessionNotFound:
            return None

    def list_ids(self) -> List[str]:
        """Every persisted record id, including unreadable ones."""
        if not self.sessions_dir.exists():
            return []
        return sorted(
            p.name[: -len(RECORD_SUFFIX)]
            for p in self.sessions_dir.iterdir()
            if p.is_file() and p.name.endswith(RECORD_SUFFIX)
        )

    def list_all(self) -> List[AirdropSession]:
        """Every loadable session. Corrupt records are logged and skipped."""
        sessions = []
        for session_id in self.list_ids():
            try:
                sessions.append(self.load(session_id))
            except CorruptStateError as e:
                logger.warning(f"Skipping corrupt session {session_id}: {e}")
            except SessionNotFound:
                # Removed between listing and loading
                continue
        return sessions

import hmac
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Session:
    connection_id: str
    display_name: str
    is_privileged: bool = False


class SessionRegistry:
    """Joined participants keyed by connection id.

    Privilege is decided once, at registration, by comparing the supplied
    token with the configured secret. Without a secret nobody is privileged.
    """

    def __init__(self, admin_secret: Optional[str] = None):
        self._secret = admin_secret or None
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    @property
    def admin_enabled(self) -> bool:
        return self._secret is not None

    def _token_matches(self, supplied_token: Optional[str]) -> bool:
        if self._secret is None or not isinstance(supplied_token, str) or not supplied_token:
            return False
        return hmac.compare_digest(supplied_token.encode("utf-8"), self._secret.encode("utf-8"))

    def register(self, connection_id: str, display_name: str, supplied_token: Optional[str] = None) -> bool:
        privileged = self._token_matches(supplied_token)
        with self._lock:
            self._sessions[connection_id] = Session(connection_id, display_name, privileged)
        return privileged

    def unregister(self, connection_id: str) -> Optional[str]:
        with self._lock:
            session = self._sessions.pop(connection_id, None)
        return session.display_name if session else None

    def get(self, connection_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(connection_id)

    def is_privileged(self, connection_id: str) -> bool:
        session = self.get(connection_id)
        return bool(session and session.is_privileged)

    def active_names(self) -> List[str]:
        with self._lock:
            return [s.display_name for s in self._sessions.values()]

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

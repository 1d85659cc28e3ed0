"""
Client session context.

Holds who the client is acting as and how to reach the server. Created on
login, closed on logout; everything that talks to the server takes one
explicitly instead of reading process-wide state.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

import requests

from .errors import ConfigError


@dataclass
class Session:
    """Credentials and HTTP connection pool for one logged-in user."""
    user_id: str
    base_url: str = "http://127.0.0.1:5000"
    api_key: str = ""
    request_timeout: float = 10.0
    http: requests.Session = field(default_factory=requests.Session, repr=False)
    closed: bool = False

    @classmethod
    def login(cls, user_id: str, base_url: str, api_key: str,
              request_timeout: Optional[float] = None) -> "Session":
        """Open a session. Credentials are issued elsewhere; this only holds them."""
        if not user_id:
            raise ConfigError("A session needs a user id")
        if not api_key:
            raise ConfigError("A session needs an API key")
        session = cls(user_id=user_id, base_url=base_url.rstrip("/"), api_key=api_key)
        if request_timeout is not None:
            session.request_timeout = request_timeout
        return session

    def headers(self) -> Dict[str, str]:
        if self.closed:
            raise ConfigError("Session is closed")
        return {
            "X-API-Key": self.api_key,
            "X-User-Id": self.user_id,
            "Accept": "application/json",
        }

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def logout(self) -> None:
        """Close the connection pool. The session cannot be reused."""
        if not self.closed:
            self.http.close()
            self.closed = True

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc) -> None:
        self.logout()

"""
JSON Server - Authentication
==============================
Gates a connection behind one or more pre-authentication handlers.

Auth handlers report their verdict by returning an AuthOutcome:

    Accepted()          -> the connection is promoted to the full handler
                           table (see JsonServer.set_authenticated)
    Rejected(reason)    -> the connection is closed; the client has to
                           reconnect and start over

Built-in key authentication
---------------------------
AuthManager stores the key shared by all clients as a bcrypt hash in
<data_dir>/auth.json together with a random JWT secret. A client
authenticates with either message:

    { "op": "auth", "key": "<client key>" }
    { "op": "auth", "token": "<jwt from an earlier auth reply>" }

and on success receives:

    { "op": "auth", "authenticated": true, "token": "<jwt>" }

The key is never echoed back.
"""

import os
import json
import bcrypt
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError


# JWT configuration
# The signing secret is generated on first setup and stored alongside the key hash.
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24

AUTH_OP = "auth"


# =============================================================================
# Auth outcomes
# =============================================================================

@dataclass(frozen=True)
class Accepted:
    """The client proved its identity."""


@dataclass(frozen=True)
class Rejected:
    """The client failed authentication; the connection must be closed."""
    reason: str = "authentication failed"


AuthOutcome = Accepted | Rejected


# =============================================================================
# Key storage
# =============================================================================

class AuthManager:
    """
    Manages the shared client key and JWT token lifecycle.

    Attributes:
        auth_file: Path to the JSON file storing the key hash and JWT secret.
    """

    def __init__(self, data_dir: str):
        """
        Initialize the auth manager.

        Args:
            data_dir: Absolute path to the directory where auth.json is stored.
        """
        self.auth_file = os.path.join(data_dir, "auth.json")

    def is_configured(self) -> bool:
        """
        Check if a client key has been set.

        Returns:
            True if auth.json exists and contains a key hash.
        """
        if not os.path.exists(self.auth_file):
            return False
        try:
            data = self._load()
            return "key_hash" in data
        except (json.JSONDecodeError, OSError):
            return False

    def set_key(self, key: str) -> str:
        """
        Set (or replace) the client key.

        The JWT secret is kept when replacing a key so tokens issued
        earlier stay valid until they expire.

        Args:
            key: The plaintext key to set.

        Returns:
            A JWT token for immediate use.

        Raises:
            ValueError: If the key is empty or too short.
        """
        if not key or len(key) < 4:
            raise ValueError("Key must be at least 4 characters.")

        key_hash = bcrypt.hashpw(key.encode("utf-8"), bcrypt.gensalt())

        jwt_secret = None
        if os.path.exists(self.auth_file):
            try:
                jwt_secret = self._load().get("jwt_secret")
            except (json.JSONDecodeError, OSError):
                jwt_secret = None

        if not jwt_secret:
            jwt_secret = bcrypt.gensalt().decode("utf-8")

        data = {
            "key_hash": key_hash.decode("utf-8"),
            "jwt_secret": jwt_secret,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self._save(data)

        return self._create_token(jwt_secret)

    def verify_key(self, key: str) -> str | None:
        """
        Verify a key and return a JWT token if correct.

        Args:
            key: The plaintext key to verify.

        Returns:
            A JWT token string if the key is correct, None otherwise.
        """
        if not self.is_configured():
            return None

        data = self._load()
        stored_hash = data["key_hash"].encode("utf-8")

        if bcrypt.checkpw(key.encode("utf-8"), stored_hash):
            return self._create_token(data["jwt_secret"])

        return None

    def verify_token(self, token: str) -> bool:
        """
        Verify a JWT token is valid and not expired.

        Args:
            token: The JWT token string to verify.

        Returns:
            True if the token is valid, False otherwise.
        """
        if not self.is_configured():
            return False

        data = self._load()
        try:
            jwt.decode(token, data["jwt_secret"], algorithms=[JWT_ALGORITHM])
            return True
        except JWTError:
            return False

    def refresh_token(self) -> str:
        """Issue a fresh token (used after a successful token login)."""
        return self._create_token(self._load()["jwt_secret"])

    # -- Internal helpers ------------------------------------------------------

    def _create_token(self, secret: str) -> str:
        """Generate a JWT token with expiration."""
        payload = {
            "sub": "client",
            "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS),
            "iat": datetime.now(timezone.utc),
        }
        return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)

    def _load(self) -> dict:
        """Load auth.json from disk."""
        with open(self.auth_file, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self, data: dict) -> None:
        """Save data to auth.json."""
        os.makedirs(os.path.dirname(self.auth_file), exist_ok=True)
        with open(self.auth_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)


# =============================================================================
# Auth handler
# =============================================================================

def install_auth_handler(server, auth_manager: AuthManager, op: str = AUTH_OP) -> None:
    """
    Register the key/token authentication handler on a server.

    Args:
        server:       JsonServer to register the handler with.
        auth_manager: Key storage used to verify credentials.
        op:           Operation name of the auth message.
    """
    async def _authenticate(cc, msg: dict) -> AuthOutcome:
        key = msg.get("key")
        token = msg.get("token")

        new_token = None
        if isinstance(key, str):
            new_token = auth_manager.verify_key(key)
        elif isinstance(token, str) and auth_manager.verify_token(token):
            new_token = auth_manager.refresh_token()

        if new_token is None:
            return Rejected(f"bad credentials from {cc}")

        reply = {k: v for k, v in msg.items() if k not in ("key", "token")}
        reply["authenticated"] = True
        reply["token"] = new_token
        await cc.send_obj(op, reply)
        return Accepted()

    server.set_auth_handler(op, _authenticate)

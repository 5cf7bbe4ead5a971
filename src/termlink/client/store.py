"""Local persistence for client identity.

Keeps a stable device id per role and the bearer token issued by the
server after an external login, as small files under the state directory.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from termlink.domain.models import Role

logger = logging.getLogger(__name__)

TOKEN_FILE = "token"


class DeviceStore:
    """Reads and writes client state under ``state_dir``."""

    def __init__(self, state_dir: Path | str) -> None:
        self._dir = Path(state_dir).expanduser()

    def device_id(self, role: Role) -> str:
        """Return this machine's device id for ``role``, creating it once."""
        path = self._dir / f"{role.value}_device_id"
        if path.exists():
            value = path.read_text().strip()
            if value:
                return value
        value = str(uuid.uuid4())
        self._dir.mkdir(parents=True, exist_ok=True)
        path.write_text(value + "\n")
        logger.info("Created %s device id %s", role.value, value)
        return value

    def load_token(self) -> str | None:
        path = self._dir / TOKEN_FILE
        if not path.exists():
            return None
        return path.read_text().strip() or None

    def save_token(self, token: str) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._dir / TOKEN_FILE
        path.write_text(token + "\n")
        os.chmod(path, 0o600)
        logger.info("Saved login token to %s", path)

    def clear_token(self) -> None:
        path = self._dir / TOKEN_FILE
        if path.exists():
            path.unlink()
            logger.info("Cleared login token")

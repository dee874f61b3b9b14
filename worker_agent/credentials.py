"""Node credentials persisted between agent restarts."""

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    node_id: UUID
    auth_token: str


def load_credentials(path: str) -> Optional[Credentials]:
    """Missing or unreadable files mean the node registers from scratch."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Credentials(node_id=UUID(data["node_id"]), auth_token=data["auth_token"])
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"[agent] ignoring unreadable credentials file {path}: {e}")
        return None


def save_credentials(path: str, credentials: Credentials) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump({"node_id": str(credentials.node_id), "auth_token": credentials.auth_token}, f)
    os.chmod(path, 0o600)
    logger.info(f"[agent] credentials saved to {path}")

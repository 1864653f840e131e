"""Append-only audit trail of changes made at the identity service."""

import json
import logging
from pathlib import Path
from typing import Any

from apihub.models import utcnow

logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only audit log (one JSON object per line)."""

    def __init__(self, path: Path):
        self.path = path
        self._ensure_dir()

    def _ensure_dir(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        event: str,
        environment: str | None = None,
        client_id: str | None = None,
        scope: str | None = None,
        application_id: str | None = None,
        params: dict[str, Any] | None = None,
        result: str | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Write an audit entry."""
        entry: dict[str, Any] = {
            "ts": utcnow().isoformat() + "Z",
            "event": event,
        }
        if environment:
            entry["environment"] = environment
        if client_id:
            entry["client_id"] = client_id
        if scope:
            entry["scope"] = scope
        if application_id:
            entry["application_id"] = application_id
        if params:
            # Keys starting with "_" carry secrets
            entry["params"] = {k: v for k, v in params.items() if not k.startswith("_")}
        if result:
            entry["result"] = result
        if error:
            entry["error"] = error
        entry.update(extra)

        with open(self.path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

        logger.debug(f"Audit: {event} environment={environment} client_id={client_id} scope={scope}")

    def read(self) -> list[dict[str, Any]]:
        """All entries written so far, oldest first."""
        if not self.path.exists():
            return []
        with open(self.path) as f:
            return [json.loads(line) for line in f if line.strip()]

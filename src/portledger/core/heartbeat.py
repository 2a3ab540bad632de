from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from portledger.config import settings


@dataclass
class AgentHealth:
    healthy: bool
    ttl_seconds: int
    age_seconds: Optional[int] = None
    last_seen: Optional[datetime] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"healthy": self.healthy, "ttl_seconds": self.ttl_seconds}
        if self.age_seconds is not None:
            payload["age_seconds"] = self.age_seconds
        if self.last_seen is not None:
            payload["last_seen"] = self.last_seen.isoformat()
        if self.reason:
            payload["reason"] = self.reason
        if self.error:
            payload["error"] = self.error
        return payload


def _parse_last_seen(payload: Dict[str, Any]) -> Optional[datetime]:
    unix = payload.get("unix")
    if isinstance(unix, (int, float)) and not isinstance(unix, bool) and unix > 0:
        return datetime.fromtimestamp(unix, tz=timezone.utc)
    stamp = payload.get("timestamp")
    if isinstance(stamp, str) and stamp:
        try:
            parsed = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def check_agent_health(
    path: Optional[Path] = None,
    ttl_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AgentHealth:
    """Compare the agent's last heartbeat against the freshness window."""
    path = Path(path or settings.agent_heartbeat_path)
    ttl = ttl_seconds if ttl_seconds and ttl_seconds > 0 else settings.agent_heartbeat_ttl_seconds
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        return AgentHealth(healthy=False, ttl_seconds=ttl, error=str(exc))
    last_seen = _parse_last_seen(payload) if isinstance(payload, dict) else None
    if last_seen is None:
        return AgentHealth(healthy=False, ttl_seconds=ttl, reason="invalid heartbeat")
    now = now or datetime.now(timezone.utc)
    age = int((now - last_seen).total_seconds())
    return AgentHealth(healthy=age <= ttl, ttl_seconds=ttl, age_seconds=age, last_seen=last_seen)

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Subject:
    """Canonical user record as returned by the identity service."""

    id: str
    email: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRecord:
    subject_id: str
    email: str
    refresh_token_id: str
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    device_info: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "email": self.email,
            "refresh_token_id": self.refresh_token_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "device_info": self.device_info,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            subject_id=data["subject_id"],
            email=data["email"],
            refresh_token_id=data["refresh_token_id"],
            created_at=_parse_ts(data["created_at"]),
            last_activity=_parse_ts(data["last_activity"]),
            device_info=data.get("device_info"),
        )


@dataclass
class AccountOption:
    """One existing account an OAuth identity could be attached to."""

    subject_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class LinkSession:
    email: str
    provider: str
    provider_id: str
    candidates: List[AccountOption] = field(default_factory=list)

    def candidate_ids(self) -> List[str]:
        return [candidate.subject_id for candidate in self.candidates]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinkSession":
        return cls(
            email=data["email"],
            provider=data["provider"],
            provider_id=data["provider_id"],
            candidates=[AccountOption(**c) for c in data.get("candidates") or []],
        )

"""Provide the shared models of the smart HTTP service."""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class ServiceKind(str, Enum):
    """Represent the pack-protocol service requested by the client."""

    UPLOAD_PACK = "upload-pack"
    RECEIVE_PACK = "receive-pack"

    @classmethod
    def from_name(cls, name: str) -> "ServiceKind":
        """Resolve a service name, with or without the `git-` prefix."""
        if name and name.startswith("git-"):
            name = name[4:]
        return cls(name)

    @property
    def command_name(self) -> str:
        """Return the name used on the wire, e.g. `git-upload-pack`."""
        return "git-" + self.value


class SessionStatus(str, Enum):
    """Represent the decision state of a service session."""

    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"


class NegotiationRecord(BaseModel):
    """Represent the ref/commit data recovered from one negotiation line."""

    model_config = ConfigDict(frozen=True)

    last: Optional[str] = None
    commit: Optional[str] = None
    ref: Optional[str] = None
    branch: Optional[str] = None
    tag: Optional[str] = None

    def to_header(self) -> Dict[str, Any]:
        """Return the payload of the `header` event."""
        return self.model_dump(exclude_none=True)


__all__ = ["ServiceKind", "SessionStatus", "NegotiationRecord"]

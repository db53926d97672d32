"""Contract for handing completed recordings to an external upload service."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


class UploadAuthExpired(RuntimeError):
    """Raised when the upload service requires the user to authenticate again."""

    def __init__(self, message: str = "Upload authentication expired", *, auth_url: str | None = None) -> None:
        super().__init__(message)
        self.auth_url = auth_url


@dataclass(frozen=True, slots=True)
class UploadResult:
    """Identity of an uploaded file as reported by the service."""

    file_id: str | None = None
    link: str | None = None
    extra: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"fileId": self.file_id, "fileLink": self.link}
        payload.update(self.extra)
        return payload


class UploadSink(Protocol):
    """Receives a completed recording; implementations live outside this package."""

    async def upload(self, path: Path, *, filename: str, camera_id: str | None) -> UploadResult:
        ...


__all__ = ["UploadAuthExpired", "UploadResult", "UploadSink"]

"""Payload models for the version route."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict


class VersionDescriptor(BaseModel):
    """Projection of the upstream release metadata served by ``/latest``.

    Fields missing upstream stay unset and are left out of the JSON body, so
    clients must read an absent ``version`` as unknown.
    """

    model_config = ConfigDict(frozen=True)

    version: Optional[str] = None
    published_at: Optional[str] = None

    @classmethod
    def from_release(cls, release: Any) -> "VersionDescriptor":
        if not isinstance(release, Mapping):
            raise ValueError("release payload is not a JSON object")
        fields: dict[str, Any] = {}
        if "tag_name" in release:
            fields["version"] = release["tag_name"]
        if "published_at" in release:
            fields["published_at"] = release["published_at"]
        return cls(**fields)

    def to_json(self) -> bytes:
        return self.model_dump_json(exclude_unset=True).encode("utf-8")

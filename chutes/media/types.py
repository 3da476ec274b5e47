from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Literal

PrimitiveType = Literal["string", "integer", "number", "boolean", "array", "object"]
HttpMethod = Literal["POST", "PUT"]
Operation = Literal["text2video", "image2video", "edit", "image_edit", "video2video", "keyframe"]

PRIMITIVE_TYPES: frozenset[str] = frozenset({"string", "integer", "number", "boolean", "array", "object"})
OPERATIONS: tuple[Operation, ...] = ("text2video", "image2video", "edit", "image_edit", "video2video", "keyframe")
EDIT_OPERATIONS: frozenset[str] = frozenset({"edit", "image_edit"})
VIDEO_OPERATIONS: frozenset[str] = frozenset({"text2video", "image2video", "video2video", "keyframe"})


def normalize_primitive_type(value: object) -> PrimitiveType:
    if isinstance(value, str) and value in PRIMITIVE_TYPES:
        return value  # type: ignore[return-value]
    return "string"


@dataclass(frozen=True, slots=True)
class EndpointParameter:
    name: str
    required: bool = False
    type: PrimitiveType = "string"


@dataclass(frozen=True, slots=True)
class EndpointDescriptor:
    """
    One POST/PUT operation surface discovered on a chute.

    `parameters` keeps schema declaration order; names are unique.
    """

    path: str
    method: HttpMethod = "POST"
    parameters: tuple[EndpointParameter, ...] = ()

    def __post_init__(self) -> None:
        if self.method not in {"POST", "PUT"}:
            raise ValueError(f"unsupported endpoint method: {self.method}")
        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate parameter names on {self.path}")

    def parameter(self, name: str) -> EndpointParameter | None:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    def has_parameter(self, name: str) -> bool:
        return self.parameter(name) is not None

    def has_any_parameter(self, names: tuple[str, ...] | frozenset[str]) -> bool:
        return any(p.name in names for p in self.parameters)

    def parameter_names(self) -> list[str]:
        return [p.name for p in self.parameters]

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "method": self.method,
            "parameters": [{"name": p.name, "required": p.required, "type": p.type} for p in self.parameters],
        }


@dataclass(frozen=True, slots=True)
class CapabilityDescriptor:
    endpoints: tuple[EndpointDescriptor, ...] = ()
    supports_text_to_video: bool = False
    supports_image_to_video: bool = False
    supports_image_edit: bool = False
    supports_video_to_video: bool = False
    supports_keyframe_interp: bool = False
    text_to_video_path: str | None = None
    image_to_video_path: str | None = None
    image_edit_path: str | None = None
    video_to_video_path: str | None = None
    keyframe_interp_path: str | None = None
    schema_found: bool = False

    def find_endpoint(self, path: str | None) -> EndpointDescriptor | None:
        if path is None:
            return None
        for endpoint in self.endpoints:
            if endpoint.path == path:
                return endpoint
        return None

    def preferred_path(self, operation: str) -> str | None:
        if operation == "text2video":
            return self.text_to_video_path
        if operation == "image2video":
            return self.image_to_video_path
        if operation in EDIT_OPERATIONS:
            return self.image_edit_path
        if operation == "video2video":
            return self.video_to_video_path
        if operation == "keyframe":
            return self.keyframe_interp_path
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_found": self.schema_found,
            "supports_text_to_video": self.supports_text_to_video,
            "supports_image_to_video": self.supports_image_to_video,
            "supports_image_edit": self.supports_image_edit,
            "supports_video_to_video": self.supports_video_to_video,
            "supports_keyframe_interp": self.supports_keyframe_interp,
            "text_to_video_path": self.text_to_video_path,
            "image_to_video_path": self.image_to_video_path,
            "image_edit_path": self.image_edit_path,
            "video_to_video_path": self.video_to_video_path,
            "keyframe_interp_path": self.keyframe_interp_path,
            "endpoints": [e.to_dict() for e in self.endpoints],
        }


@dataclass(frozen=True, slots=True)
class SchemaCacheEntry:
    schema: dict[str, Any]
    fetched_at: float


@dataclass(frozen=True, slots=True)
class RequestPlan:
    endpoint: str
    body: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"endpoint": self.endpoint, "body": dict(self.body)}


@dataclass(frozen=True, slots=True)
class InferenceResult:
    """
    Outcome of executing a `RequestPlan`.

    Exactly one of `data` (binary media) or `json` is set.
    """

    endpoint: str
    status: int
    content_type: str
    data: bytes | None = None
    json: Any | None = None
    mime_type: str | None = None
    file_name: str | None = None

    @property
    def is_binary(self) -> bool:
        return self.data is not None


def bytes_to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def sniff_image_mime_type(data: bytes) -> str | None:
    if len(data) >= 8 and data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(data) >= 3 and data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if len(data) >= 12 and data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    if len(data) >= 6 and data[:6] in {b"GIF87a", b"GIF89a"}:
        return "image/gif"
    return None


def sniff_video_mime_type(data: bytes) -> str | None:
    if len(data) >= 12 and data[4:8] == b"ftyp":
        if data[8:10] == b"qt":
            return "video/quicktime"
        return "video/mp4"
    if len(data) >= 4 and data[:4] == b"\x1a\x45\xdf\xa3":
        return "video/webm"
    return None


def extension_for_mime_type(mime: str | None) -> str:
    if not mime:
        return ".bin"
    m = mime.lower()
    if m == "image/png":
        return ".png"
    if m in {"image/jpeg", "image/jpg"}:
        return ".jpg"
    if m == "image/webp":
        return ".webp"
    if m == "image/gif":
        return ".gif"
    if m == "video/mp4":
        return ".mp4"
    if m == "video/quicktime":
        return ".mov"
    if m == "video/webm":
        return ".webm"
    return ".bin"

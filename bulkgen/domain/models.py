# -*- coding: utf-8 -*-
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

# Stage kinds
DRAFT = "draft"
VARIATION = "variation"
UPSCALE = "upscale"

# Album statuses
STATUS_CREATED = "created"
STATUS_RUNNING = "running"
STATUS_FINISHED = "finished"
STATUS_PARTIAL = "partially finished"
STATUS_CANCELLED = "cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RawMessage:
    id: str
    channel_id: str
    content: str
    nonce: str = ""
    reference_id: Optional[str] = None  # message_reference.message_id when the bot replies to a parent
    attachments: List[str] = field(default_factory=list)  # attachment URLs
    buttons: Dict[str, str] = field(default_factory=dict)  # label -> custom_id, e.g. "U1" -> "MJ::JOB::upsample::1::..."
    event: str = "MESSAGE_CREATE"  # "MESSAGE_CREATE" | "MESSAGE_UPDATE"


@dataclass
class ParsedStatus:
    prompt: str
    stage: str          # DRAFT | VARIATION | UPSCALE
    progress: float     # 0.0 .. 1.0
    terminal: bool
    quadrant: int = 0   # 1..4 for "Image #N" upscales, 0 otherwise


@dataclass
class StageOptions:
    stage: str
    nonce: str
    quadrant: int = 0
    message_id: Optional[str] = None  # parent message the button belongs to
    custom_id: Optional[str] = None   # button to press for follow-ups


@dataclass
class Task:
    prompt_index: int
    prompt: str
    stage: str
    token: str                       # correlation token (nonce), assigned when sent
    quadrant: int = 0
    lineage: str = ""                # "", "v2", "u3", "v2_u3"
    parent_id: Optional[str] = None
    custom_id: Optional[str] = None
    message_id: Optional[str] = None  # refined once the bot acknowledges
    created_at: float = 0.0
    progress: float = 0.0

    def options(self) -> StageOptions:
        return StageOptions(
            stage=self.stage,
            nonce=self.token,
            quadrant=self.quadrant,
            message_id=self.parent_id,
            custom_id=self.custom_id,
        )


@dataclass
class TaskUpdate:
    task: Task
    progress: float
    terminal: bool
    message_id: str
    urls: List[str] = field(default_factory=list)
    buttons: Dict[str, str] = field(default_factory=dict)


@dataclass
class GenerateEvent:
    prompt_index: int
    prompt: str
    stage: str
    lineage: str = ""
    progress: float = 0.0
    done: bool = False
    urls: List[str] = field(default_factory=list)
    message_id: Optional[str] = None
    buttons: Dict[str, str] = field(default_factory=dict)
    is_last: bool = False
    chain_ok: bool = True
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.done and self.error is None

    @property
    def key(self) -> str:
        return f"{self.prompt_index}:{self.lineage or self.stage}"


@dataclass
class Image:
    prompt_index: int
    prompt: str
    url: str
    file: Optional[str] = None
    thumbnail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_index": self.prompt_index,
            "prompt": self.prompt,
            "url": self.url,
            "file": self.file,
            "thumbnail": self.thumbnail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Image":
        return cls(
            prompt_index=int(data.get("prompt_index", -1)),
            prompt=str(data.get("prompt", "")),
            url=str(data.get("url", "")),
            file=data.get("file") or None,
            thumbnail=data.get("thumbnail") or None,
        )


@dataclass
class Album:
    id: str
    prompts: List[str] = field(default_factory=list)
    status: str = STATUS_CREATED
    percentage: float = 0.0
    images: List[Image] = field(default_factory=list)
    finished: List[int] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "status": self.status,
            "percentage": self.percentage,
            "prompts": list(self.prompts),
            "finished": list(self.finished),
            "images": [im.to_dict() for im in self.images],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Album":
        def _ts(raw: Any) -> datetime:
            try:
                return datetime.fromisoformat(str(raw))
            except (TypeError, ValueError):
                return _utcnow()

        prompts = [str(p) for p in data.get("prompts", []) or []]
        finished = []
        for idx in data.get("finished", []) or []:
            if isinstance(idx, int) and 0 <= idx < len(prompts) and idx not in finished:
                finished.append(idx)
        return cls(
            id=str(data["id"]),
            prompts=prompts,
            status=str(data.get("status") or STATUS_CREATED),
            percentage=float(data.get("percentage") or 0.0),
            images=[Image.from_dict(d) for d in data.get("images", []) or [] if isinstance(d, dict)],
            finished=finished,
            created_at=_ts(data.get("created_at")),
            updated_at=_ts(data.get("updated_at")),
        )


@dataclass
class Status:
    percentage: float
    estimated: Optional[timedelta] = None
    error: Optional[str] = None

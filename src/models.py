"""
models.py

Data model shared by the worker, the status store and the batch controller.

Every per-item value here is a frozen dataclass. State changes are expressed
by building a new value with dataclasses.replace(), never by mutating a
shared record; see status_store.py for the update discipline.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from config import DEFAULT_MODEL_PROVIDER, RESET_ON_STOP, SYNTHETIC_ARTICLE_PREFIX

# ── Item status constants ──────────────────────────────────────────────────────

STATUS_PENDING    = "pending"
STATUS_SEARCHING  = "searching"
STATUS_EXTRACTING = "extracting"
STATUS_COMPLETED  = "completed"
STATUS_FAILED     = "failed"
STATUS_STOPPED    = "stopped"

TERMINAL_STATUSES  = frozenset({STATUS_COMPLETED, STATUS_FAILED, STATUS_STOPPED})
IN_FLIGHT_STATUSES = frozenset({STATUS_SEARCHING, STATUS_EXTRACTING})

# Forward-only ordering. Terminal states share the top rank and never move.
STATUS_RANK: dict[str, int] = {
    STATUS_PENDING:    0,
    STATUS_SEARCHING:  1,
    STATUS_EXTRACTING: 2,
    STATUS_COMPLETED:  3,
    STATUS_FAILED:     3,
    STATUS_STOPPED:    3,
}

SCHEDULING_CHUNKED = "chunked"
SCHEDULING_POOL    = "pool"

SOURCE_PDF = "pdf"
SOURCE_WEB = "web"


# ── Input ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProductRecord:
    id: str
    product_name: str
    article_number: Optional[str] = None
    url: Optional[str] = None

    @property
    def has_real_article_number(self) -> bool:
        return bool(self.article_number) and not self.article_number.startswith(
            SYNTHETIC_ARTICLE_PREFIX
        )


@dataclass(frozen=True)
class PropertyDefinition:
    name: str
    description: Optional[str] = None
    expected_format: Optional[str] = None
    id: Optional[str] = None

    def to_request(self) -> dict:
        payload: dict[str, Any] = {"id": self.id or self.name, "name": self.name}
        if self.description:
            payload["description"] = self.description
        if self.expected_format:
            payload["expectedFormat"] = self.expected_format
        return payload


@dataclass(frozen=True)
class ExtractionConfig:
    concurrency: int
    pdf_enabled: bool = False
    web_enabled: bool = True
    properties: tuple[PropertyDefinition, ...] = ()
    model_provider: str = DEFAULT_MODEL_PROVIDER
    api_key: str = ""
    scheduling: str = SCHEDULING_CHUNKED
    reset_on_stop: bool = RESET_ON_STOP

    @property
    def property_names(self) -> list[str]:
        return [p.name for p in self.properties]


def normalize_records(records: list[ProductRecord]) -> list[ProductRecord]:
    """
    Fill in synthetic article numbers and strip blank optional fields.

    A row without an article number gets "auto_<n>" where n is its 1-based
    position, so it can still be tracked but is never matched against PDFs.
    """
    normalized: list[ProductRecord] = []
    for index, record in enumerate(records, start=1):
        article_number = (record.article_number or "").strip()
        url = (record.url or "").strip()
        normalized.append(ProductRecord(
            id=record.id,
            product_name=(record.product_name or "").strip(),
            article_number=article_number or f"{SYNTHETIC_ARTICLE_PREFIX}{index}",
            url=url or None,
        ))
    return normalized


# ── Results ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SourceRef:
    url: str
    label: str = ""


@dataclass(frozen=True)
class PropertyValue:
    value: Any
    confidence: Optional[float] = None
    sources: tuple[SourceRef, ...] = ()
    is_consistent: Optional[bool] = None


@dataclass(frozen=True)
class SourceInfo:
    """Which sources contributed to a result, for tooltips and export."""
    has_web: bool = False
    has_pdf: bool = False
    web_url: Optional[str] = None
    pdf_files: tuple[str, ...] = ()
    # Sanitised text that was sent to the AI, for inspecting a result.
    pdf_content: Optional[str] = None
    web_content: Optional[str] = None


@dataclass(frozen=True)
class ExtractionResult:
    article_number: str
    product_name: str
    properties: dict[str, PropertyValue] = field(default_factory=dict)
    source_labels: tuple[str, ...] = ()
    source_info: SourceInfo = field(default_factory=SourceInfo)

    def to_dict(self) -> dict:
        return {
            "articleNumber": self.article_number,
            "productName": self.product_name,
            "sourceLabels": list(self.source_labels),
            "sourceInfo": {
                "hasWeb": self.source_info.has_web,
                "hasPdf": self.source_info.has_pdf,
                "webUrl": self.source_info.web_url,
                "pdfFiles": list(self.source_info.pdf_files),
                "pdfContent": self.source_info.pdf_content,
                "webContent": self.source_info.web_content,
            },
            "properties": {
                name: {
                    "value": prop.value,
                    "confidence": prop.confidence,
                    "isConsistent": prop.is_consistent,
                    "sources": [{"url": s.url, "label": s.label} for s in prop.sources],
                }
                for name, prop in self.properties.items()
            },
        }


# ── Live state ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ItemState:
    id: str
    status: str = STATUS_PENDING
    progress: int = 0
    status_detail: str = "Waiting..."
    result: Optional[ExtractionResult] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "statusDetail": self.status_detail,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass(frozen=True)
class RunSummary:
    completed: int = 0
    failed: int = 0
    stopped: int = 0
    total: int = 0

    def to_dict(self) -> dict:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "stopped": self.stopped,
            "total": self.total,
        }

"""Pydantic models for the completion stream, proposed actions and the local API."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for payloads that arrive from the backend in either snake_case or camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActionType(str, Enum):
    CREATE_ITEM = "create_item"
    HIGHLIGHT_ANNOTATION = "highlight_annotation"
    NOTE_ANNOTATION = "note_annotation"
    ITEM_NOTE = "zotero_note"
    EDIT_METADATA = "edit_metadata"


class ActionStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"
    UNDONE = "undone"
    ERROR = "error"


ANNOTATION_TYPES = frozenset({ActionType.HIGHLIGHT_ANNOTATION, ActionType.NOTE_ANNOTATION})

ErrorKind = Literal["network", "auth", "rate_limit", "server_error", "bad_request", "unknown"]
ERROR_KINDS: tuple[str, ...] = ("network", "auth", "rate_limit", "server_error", "bad_request", "unknown")

MessageStatus = Literal["in_progress", "thinking", "completed", "error", "canceled"]


# --- Library references ---


class LibraryCoordinate(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    library_id: int
    key: str

    def __str__(self) -> str:
        return f"{self.library_id}-{self.key}"


class Identifiers(WireModel):
    doi: str | None = None
    isbn: str | None = None
    pmid: str | None = None
    arxiv_id: str | None = None


class ExternalReference(WireModel):
    semantic_scholar_id: str | None = None
    openalex_id: str | None = None
    source: str | None = None
    title: str | None = None
    authors: list[str] = Field(default_factory=list)
    year: int | None = None
    publication_date: str | None = None
    venue: str | None = None
    abstract: str | None = None
    url: str | None = None
    identifiers: Identifiers = Field(default_factory=Identifiers)

    # Set by the backend when it believes the item is already in the user's library
    item_exists: bool = False
    library_id: int | None = None
    item_key: str | None = None

    # Cache key: Semantic Scholar id, else OpenAlex id, else whatever id the backend sent
    source_id: str | None = None

    @model_validator(mode="after")
    def _derive_source_id(self) -> "ExternalReference":
        self.source_id = self.semantic_scholar_id or self.openalex_id or self.source_id or ""
        return self

    @property
    def suggested_coordinate(self) -> LibraryCoordinate | None:
        if self.item_exists and self.library_id is not None and self.item_key:
            return LibraryCoordinate(library_id=self.library_id, key=self.item_key)
        return None

    @property
    def date(self) -> str | None:
        if self.publication_date:
            return self.publication_date
        return str(self.year) if self.year else None


class ReferenceQuery(BaseModel):
    title: str | None = None
    date: str | None = None
    doi: str | None = None
    isbn: str | None = None
    creators: list[str] = Field(default_factory=list)


# --- Proposed data ---


class CreateItemProposedData(WireModel):
    item: ExternalReference
    reason: str | None = None
    relevance_score: float | None = None
    file_available: bool = False
    collection_keys: list[str] = Field(default_factory=list)
    suggested_tags: list[str] = Field(default_factory=list)


class PageLocation(WireModel):
    page_index: int = Field(ge=0)
    boxes: list[list[float]] = Field(default_factory=list)


class NotePosition(WireModel):
    page_index: int = Field(ge=0)
    side: Literal["left", "right"] = "right"
    x: float = 0.0
    y: float = 0.0


class HighlightAnnotationProposedData(WireModel):
    title: str = ""
    comment: str = ""
    color: str | None = None
    text: str = ""
    sentence_ids: list[str] = Field(default_factory=list)
    highlight_locations: list[PageLocation] = Field(min_length=1)
    library_id: int
    attachment_key: str = Field(min_length=1)

    @property
    def first_page(self) -> int:
        return min(loc.page_index for loc in self.highlight_locations)


class NoteAnnotationProposedData(WireModel):
    title: str = ""
    comment: str = ""
    sentence_ids: list[str] = Field(default_factory=list)
    note_position: NotePosition
    library_id: int
    attachment_key: str = Field(min_length=1)

    @property
    def first_page(self) -> int:
        return self.note_position.page_index


AnnotationProposedData = HighlightAnnotationProposedData | NoteAnnotationProposedData


class ItemNoteProposedData(WireModel):
    """A library note, standalone or attached to ``parent_key``."""

    title: str = ""
    content: str | None = None
    library_id: int | None = None
    parent_key: str | None = Field(
        default=None, validation_alias=AliasChoices("parent_key", "parentKey", "zotero_key", "zoteroKey")
    )


class MetadataEdit(WireModel):
    field: str = Field(min_length=1)
    old_value: str | None = None
    new_value: str


class EditMetadataProposedData(WireModel):
    library_id: int
    key: str = Field(min_length=1, validation_alias=AliasChoices("key", "zotero_key", "zoteroKey"))
    edits: list[MetadataEdit] = Field(min_length=1)


class CreateItemResultData(WireModel):
    library_id: int
    key: str
    created: bool = True

    @property
    def coordinate(self) -> LibraryCoordinate:
        return LibraryCoordinate(library_id=self.library_id, key=self.key)


class AnnotationResultData(WireModel):
    library_id: int
    key: str
    attachment_key: str


class ItemNoteResultData(WireModel):
    library_id: int
    key: str
    parent_key: str | None = None


class AppliedMetadataEdit(WireModel):
    field: str
    applied_value: str
    previous_value: str | None = None


class EditMetadataResultData(WireModel):
    library_id: int
    key: str
    applied_edits: list[AppliedMetadataEdit] = Field(default_factory=list)

    @property
    def coordinate(self) -> LibraryCoordinate:
        return LibraryCoordinate(library_id=self.library_id, key=self.key)


ResultData = CreateItemResultData | AnnotationResultData | ItemNoteResultData | EditMetadataResultData

_PROPOSED_DATA_MODELS: dict[ActionType, type[BaseModel]] = {
    ActionType.CREATE_ITEM: CreateItemProposedData,
    ActionType.HIGHLIGHT_ANNOTATION: HighlightAnnotationProposedData,
    ActionType.NOTE_ANNOTATION: NoteAnnotationProposedData,
    ActionType.ITEM_NOTE: ItemNoteProposedData,
    ActionType.EDIT_METADATA: EditMetadataProposedData,
}

_RESULT_DATA_MODELS: dict[ActionType, type[BaseModel]] = {
    ActionType.CREATE_ITEM: CreateItemResultData,
    ActionType.HIGHLIGHT_ANNOTATION: AnnotationResultData,
    ActionType.NOTE_ANNOTATION: AnnotationResultData,
    ActionType.ITEM_NOTE: ItemNoteResultData,
    ActionType.EDIT_METADATA: EditMetadataResultData,
}


def result_model_for(action_type: ActionType) -> type[BaseModel]:
    return _RESULT_DATA_MODELS[action_type]


class ProposedAction(WireModel):
    """A tentative mutation proposed by the agent.

    ``proposed_data`` and ``result_data`` are resolved into the model that matches
    ``action_type``; an unknown discriminator fails validation instead of being guessed.
    """

    id: str = Field(min_length=1)
    action_type: ActionType
    message_id: str = ""
    toolcall_id: str | None = None
    status: ActionStatus = ActionStatus.PENDING
    proposed_data: (
        CreateItemProposedData
        | HighlightAnnotationProposedData
        | NoteAnnotationProposedData
        | ItemNoteProposedData
        | EditMetadataProposedData
    )
    result_data: ResultData | None = None
    error_message: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_tagged_data(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        raw_type = values.get("action_type", values.get("actionType"))
        try:
            action_type = ActionType(raw_type)
        except ValueError:
            raise ValueError(f"Unknown action_type: {raw_type!r}")

        for field, alias, models in (
            ("proposed_data", "proposedData", _PROPOSED_DATA_MODELS),
            ("result_data", "resultData", _RESULT_DATA_MODELS),
        ):
            key = field if field in values else alias
            raw = values.get(key)
            if isinstance(raw, dict):
                values[key] = models[action_type].model_validate(raw)
        return values

    @model_validator(mode="after")
    def _check_status_invariants(self) -> "ProposedAction":
        if self.result_data is not None and self.status != ActionStatus.APPLIED:
            raise ValueError(f"result_data is only allowed when status is applied (got {self.status.value})")
        if self.status == ActionStatus.APPLIED and self.result_data is None:
            raise ValueError("applied actions must carry result_data")
        if self.error_message is not None and self.status != ActionStatus.ERROR:
            raise ValueError("error_message is only allowed when status is error")
        expected = _PROPOSED_DATA_MODELS[self.action_type]
        if not isinstance(self.proposed_data, expected):
            raise ValueError(f"proposed_data does not match action_type {self.action_type.value}")
        return self

    @property
    def is_annotation(self) -> bool:
        return self.action_type in ANNOTATION_TYPES

    @property
    def is_create_item(self) -> bool:
        return self.action_type == ActionType.CREATE_ITEM


# --- Stream state ---


class ToolCall(WireModel):
    id: str
    message_id: str | None = None
    function_name: str | None = None
    arguments: dict[str, Any] | str | None = None
    status: str | None = None
    result: Any = None
    progress: str | None = None


class StreamWarning(WireModel):
    type: str
    message: str
    message_id: str | None = None
    data: dict[str, Any] | None = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)


class Message(WireModel):
    id: str
    role: str = "assistant"
    content: str = ""
    reasoning: str = ""
    status: MessageStatus = "in_progress"
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    toolcall_ids: list[str] = Field(default_factory=list)
    warnings: list[StreamWarning] = Field(default_factory=list)


class CitationMetadata(WireModel):
    citation_id: str
    message_id: str | None = None
    library_id: int | None = None
    item_key: str | None = None
    external_source: str | None = None
    external_source_id: str | None = None
    author_year: str | None = None
    preview: str | None = None

    @property
    def is_library_citation(self) -> bool:
        return self.library_id is not None and bool(self.item_key)

    @property
    def is_external(self) -> bool:
        return bool(self.external_source and self.external_source_id)

    @property
    def unique_key(self) -> str:
        """Key shared by every citation of the same underlying work."""
        if self.is_library_citation:
            return f"{self.library_id}-{self.item_key}"
        if self.is_external:
            return f"{self.external_source}:{self.external_source_id}"
        return f"citation:{self.citation_id}"


class CitationEntry(BaseModel):
    citation_id: str
    key: str
    marker: int
    kind: Literal["item", "external"]
    name: str | None = None
    formatted: str | None = None
    metadata: CitationMetadata


# --- Acknowledgment ---


class AckLink(BaseModel):
    action_id: str
    result_data: dict[str, Any]


class AckError(BaseModel):
    action_id: str
    code: str = "unknown"
    detail: str = ""


class AckResult(BaseModel):
    success: bool = True
    updated: int = 0
    errors: list[AckError] = Field(default_factory=list)


# --- Local API bodies ---


class ChatRequest(BaseModel):
    content: str = Field(min_length=1, max_length=100000)


class ApplyAllRequest(BaseModel):
    action_ids: list[str] | None = Field(default=None, max_length=500)
    toolcall_id: str | None = Field(default=None, max_length=200)


class ActionOutcome(BaseModel):
    action_id: str
    status: ActionStatus
    result_data: dict[str, Any] | None = None
    error_message: str | None = None

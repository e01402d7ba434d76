from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from polymodo.models.entry import DEFAULT_ACTION_ID

MAX_QUERY_LENGTH = 500


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PingRequest(_Request):
    type: Literal["ping"]


class OpenSessionRequest(_Request):
    type: Literal["open_session"]


class CloseSessionRequest(_Request):
    type: Literal["close_session"]
    session_id: str


class QueryRequest(_Request):
    type: Literal["query"]
    session_id: str
    text: str
    wait: bool = False  # respond with the committed view instead of the pending one

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(f"query must not exceed {MAX_QUERY_LENGTH} characters")
        return v


class CancelRequest(_Request):
    type: Literal["cancel"]
    session_id: str


class MoveSelectionRequest(_Request):
    type: Literal["move_selection"]
    session_id: str
    delta: int


class ActivateRequest(_Request):
    type: Literal["activate"]
    session_id: str
    index: int | None = None
    action_id: str = DEFAULT_ACTION_ID


class ViewRequest(_Request):
    type: Literal["view"]
    session_id: str


class GoodbyeRequest(_Request):
    type: Literal["goodbye"]


Request = Annotated[
    PingRequest
    | OpenSessionRequest
    | CloseSessionRequest
    | QueryRequest
    | CancelRequest
    | MoveSelectionRequest
    | ActivateRequest
    | ViewRequest
    | GoodbyeRequest,
    Field(discriminator="type"),
]

request_adapter: TypeAdapter[Request] = TypeAdapter(Request)


class ResultRow(BaseModel):
    app_id: str
    key: str
    title: str
    subtitle: str | None
    icon: str | None
    score: float
    positions: list[int]


class SessionViewPayload(BaseModel):
    session_id: str
    status: str
    query: str
    query_serial: int | None
    results: list[ResultRow]
    selection: int
    exclusive_app: str | None
    excluded_apps: list[str]
    failed_apps: list[str]
    error: str | None

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import re
from typing import Any, Literal

from pydantic import BaseModel


Role = Literal["user", "assistant", "system"]

# Tenant ids are interpolated into SQL literals, so the alphabet is closed.
TENANT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def is_valid_tenant_id(value: str) -> bool:
    return bool(TENANT_ID_RE.match(value or ""))


@dataclass(frozen=True)
class ForeignKeyRef:
    table: str
    column: str


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    type: str
    references: ForeignKeyRef | None = None

    def render(self) -> str:
        text = f"{self.name}({self.type})"
        if self.references is not None:
            text += f" REFERENCES {self.references.table}({self.references.column})"
        return text


@dataclass(frozen=True)
class SchemaDescriptor:
    table: str
    alias: str
    columns: tuple[ColumnDescriptor, ...]

    @property
    def column_types(self) -> dict[str, str]:
        return {column.name: column.type for column in self.columns}

    def render(self) -> str:
        # One line per table keeps prompts compact and embeddings stable.
        return f"{self.table}({', '.join(column.render() for column in self.columns)})"


@dataclass(frozen=True)
class TenantScope:
    ids: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.ids:
            raise ValueError("tenant scope must not be empty")
        for tenant_id in self.ids:
            if not is_valid_tenant_id(tenant_id):
                raise ValueError("invalid tenant id")

    @classmethod
    def of(cls, *ids: str) -> "TenantScope":
        # Preserve order, drop duplicates.
        return cls(tuple(dict.fromkeys(ids)))

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self.ids


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    content: str
    timestamp: datetime | None = None
    message_id: str | None = None

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Caller:
    user_id: str
    team_id: str
    team_ids: tuple[str, ...]


class QueryIntent(BaseModel):
    summary: str = ""
    query: str = ""
    is_query: bool = False


@dataclass
class ResultSet:
    columns: list[str]
    rows: list[dict[str, Any]]
    capped: bool = False

    def __len__(self) -> int:
        return len(self.rows)


@dataclass
class ChatReply:
    answer: str
    suggestions: list[str] = field(default_factory=list)
    outcome: str = "answered"

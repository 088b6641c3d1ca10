"""Record model and CSV row cleaning for Kisan Call Centre query exports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence
from uuid import uuid4


CSV_COLUMNS: tuple[str, ...] = (
    "StateName",
    "DistrictName",
    "BlockName",
    "Season",
    "Sector",
    "Category",
    "Crop",
    "QueryType",
    "QueryText",
    "KccAns",
    "CreatedOn",
    "year",
    "month",
)

# Record attribute for each positional CSV text column.
_TEXT_COLUMNS: tuple[tuple[int, str], ...] = (
    (0, "state"),
    (1, "district"),
    (2, "block"),
    (3, "season"),
    (4, "sector"),
    (5, "category"),
    (6, "crop"),
    (7, "query_type"),
    (8, "query_text"),
    (9, "answer_text"),
)

TEXT_FIELDS: tuple[str, ...] = tuple(name for _, name in _TEXT_COLUMNS)

_DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y %H:%M",
    "%d-%m-%Y",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Record:
    """One KCC query/answer row as stored in the document collection."""

    id: str = field(default_factory=lambda: str(uuid4()))
    state: str = ""
    district: str = ""
    block: str = ""
    season: str = ""
    sector: str = ""
    category: str = ""
    crop: str = ""
    query_type: str = ""
    query_text: str = ""
    answer_text: str = ""
    created_on: datetime = field(default_factory=_utcnow)
    year: int | None = None
    month: int | None = None
    embedding: list[float] = field(default_factory=list)

    def has_embedding(self, dimension: int | None = None) -> bool:
        if not self.embedding:
            return False
        if dimension is None:
            return True
        return len(self.embedding) == dimension

    def to_payload(self) -> dict[str, Any]:
        """Return the stored payload; the vector itself lives beside it."""

        payload: dict[str, Any] = {name: getattr(self, name) for name in TEXT_FIELDS}
        created = _as_aware(self.created_on)
        payload["created_on"] = created.isoformat()
        payload["created_ts"] = created.timestamp()
        payload["year"] = self.year
        payload["month"] = self.month
        payload["embedding_dim"] = len(self.embedding)
        return payload

    def to_dict(self, *, include_embedding: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id}
        data.update({name: getattr(self, name) for name in TEXT_FIELDS})
        data["created_on"] = _as_aware(self.created_on).isoformat()
        data["year"] = self.year
        data["month"] = self.month
        if include_embedding:
            data["embedding"] = list(self.embedding)
        return data

    @classmethod
    def from_payload(
        cls,
        record_id: Any,
        payload: Mapping[str, Any] | None,
        vector: Sequence[float] | None = None,
    ) -> "Record":
        payload = payload or {}
        created = parse_created_on(payload.get("created_on"))
        return cls(
            id=str(record_id),
            created_on=created or _utcnow(),
            year=_coerce_int(payload.get("year")),
            month=_coerce_int(payload.get("month")),
            embedding=[float(value) for value in vector] if vector else [],
            **{name: str(payload.get(name) or "") for name in TEXT_FIELDS},
        )


def build_embedding_text(record: Record) -> str:
    """Format the text sent to the embedding backend for one record."""

    return (
        f"Category: {record.category or ''}. "
        f"QueryType: {record.query_type or ''}. "
        f"Query: {record.query_text or ''}. "
        f"Answer: {record.answer_text or ''}"
    )


def is_header_row(cells: Sequence[str]) -> bool:
    """Return True when a row repeats the export's column header."""

    return bool(cells) and (cells[0] or "").strip() == CSV_COLUMNS[0]


def clean_row(cells: Sequence[str | None], *, now: datetime | None = None) -> Record:
    """Build a Record from one positional CSV row.

    Text cells are trimmed and default to an empty string. ``CreatedOn`` falls back
    to ``now`` when blank or unparseable; ``year``/``month`` fall back to ``None``.
    """

    now = now or _utcnow()

    def cell(index: int) -> str:
        if index >= len(cells):
            return ""
        value = cells[index]
        return value.strip() if value else ""

    values = {name: cell(index) for index, name in _TEXT_COLUMNS}
    return Record(
        created_on=parse_created_on(cell(10)) or now,
        year=_coerce_int(cell(11)),
        month=_coerce_int(cell(12)),
        **values,
    )


def parse_created_on(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return _as_aware(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return _as_aware(datetime.fromisoformat(candidate))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return _as_aware(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if number.is_integer() else None


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "CSV_COLUMNS",
    "TEXT_FIELDS",
    "Record",
    "build_embedding_text",
    "clean_row",
    "is_header_row",
    "parse_created_on",
]

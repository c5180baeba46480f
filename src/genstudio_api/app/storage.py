"""History storage backends for generation records.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for settings and result documents.
- Keyset pagination: "give me rows older than X" instead of OFFSET paging.
- Cursor: opaque token the client sends back to get the next page.
"""

from __future__ import annotations

import base64
import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from .errors import DuplicateGenerationError, ValidationError
from .models import GenerationPage, GenerationRecord, GenerationResult, NewGeneration


class GenerationStorage(Protocol):
    def migrate(self) -> None: ...

    def save_generation(self, payload: NewGeneration, *, owner_id: str) -> GenerationRecord: ...

    def get_generation(self, generation_id: str, owner_id: str) -> GenerationRecord | None: ...

    def list_generations(
        self, owner_id: str, *, limit: int, cursor: str | None = None
    ) -> GenerationPage: ...

    def delete_generation(self, generation_id: str, owner_id: str) -> GenerationRecord | None: ...


def encode_cursor(seq: int) -> str:
    raw = json.dumps({"seq": seq}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> int:
    """Return the insertion sequence a cursor points below."""
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        parsed = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        seq = parsed["seq"]
    except (ValueError, TypeError, KeyError, UnicodeError) as exc:
        raise ValidationError("Invalid pagination cursor") from exc
    if not isinstance(seq, int) or isinstance(seq, bool):
        raise ValidationError("Invalid pagination cursor")
    return seq


class InMemoryGenerationStorage:
    """Process-local history store, used when no database URL is configured."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # (seq, record) in insertion order.
        self._rows: list[tuple[int, GenerationRecord]] = []
        self._next_seq = 1

    def migrate(self) -> None:
        return None

    def save_generation(self, payload: NewGeneration, *, owner_id: str) -> GenerationRecord:
        generation_id = payload.id or uuid.uuid4().hex
        with self._lock:
            owner_rows = [record for _, record in self._rows if record.owner_id == owner_id]
            if any(record.id == generation_id for record in owner_rows):
                raise DuplicateGenerationError(f"Generation {generation_id} already exists")
            created_at = datetime.now(tz=UTC)
            if owner_rows:
                created_at = max(created_at, owner_rows[-1].created_at)
            record = GenerationRecord(
                id=generation_id,
                owner_id=owner_id,
                mode=payload.mode,
                prompt=payload.prompt,
                settings=dict(payload.settings),
                result=payload.result.model_copy(deep=True),
                reference_image_count=payload.reference_image_count,
                created_at=created_at,
            )
            self._rows.append((self._next_seq, record))
            self._next_seq += 1
        return record.model_copy(deep=True)

    def get_generation(self, generation_id: str, owner_id: str) -> GenerationRecord | None:
        with self._lock:
            for _, record in self._rows:
                if record.id == generation_id and record.owner_id == owner_id:
                    return record.model_copy(deep=True)
        return None

    def list_generations(
        self, owner_id: str, *, limit: int, cursor: str | None = None
    ) -> GenerationPage:
        before = decode_cursor(cursor) if cursor else None
        with self._lock:
            matching = [
                (seq, record)
                for seq, record in reversed(self._rows)
                if record.owner_id == owner_id and (before is None or seq < before)
            ]
        page = matching[:limit]
        next_cursor = encode_cursor(page[-1][0]) if len(matching) > limit else None
        return GenerationPage(
            generations=[record.model_copy(deep=True) for _, record in page],
            next_cursor=next_cursor,
        )

    def delete_generation(self, generation_id: str, owner_id: str) -> GenerationRecord | None:
        with self._lock:
            for index, (_, record) in enumerate(self._rows):
                if record.id == generation_id and record.owner_id == owner_id:
                    del self._rows[index]
                    return record
        return None


class PostgresGenerationStorage:
    """Thread-safe PostgreSQL-backed storage for generation records."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required table and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS generations (
                    seq BIGSERIAL UNIQUE,
                    id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    settings_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    result_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    reference_image_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (owner_id, id)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_generations_owner_seq
                ON generations(owner_id, seq DESC)
                """)
            conn.commit()

    def save_generation(self, payload: NewGeneration, *, owner_id: str) -> GenerationRecord:
        generation_id = payload.id or uuid.uuid4().hex
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            try:
                # created_at never goes backwards for an owner, even across clock skew.
                row = conn.execute(
                    """
                    INSERT INTO generations (
                        id,
                        owner_id,
                        mode,
                        prompt,
                        settings_json,
                        result_json,
                        reference_image_count,
                        created_at
                    ) VALUES (
                        %s, %s, %s, %s, %s, %s, %s,
                        GREATEST(
                            %s,
                            COALESCE(
                                (SELECT MAX(created_at) FROM generations WHERE owner_id = %s),
                                %s
                            )
                        )
                    )
                    RETURNING *
                    """,
                    (
                        generation_id,
                        owner_id,
                        payload.mode,
                        payload.prompt,
                        self._json_wrapper(payload.settings),
                        self._json_wrapper(payload.result.model_dump(mode="json")),
                        payload.reference_image_count,
                        now,
                        owner_id,
                        now,
                    ),
                ).fetchone()
            except self._psycopg.errors.UniqueViolation as exc:
                conn.rollback()
                raise DuplicateGenerationError(
                    f"Generation {generation_id} already exists"
                ) from exc
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to load created generation")
        return self._row_to_record(row)

    def get_generation(self, generation_id: str, owner_id: str) -> GenerationRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM generations WHERE id = %s AND owner_id = %s",
                (generation_id, owner_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def list_generations(
        self, owner_id: str, *, limit: int, cursor: str | None = None
    ) -> GenerationPage:
        before = decode_cursor(cursor) if cursor else None
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM generations
                WHERE owner_id = %s
                  AND (%s::bigint IS NULL OR seq < %s::bigint)
                ORDER BY seq DESC
                LIMIT %s
                """,
                (owner_id, before, before, limit + 1),
            ).fetchall()
        page = rows[:limit]
        next_cursor = encode_cursor(int(page[-1]["seq"])) if len(rows) > limit else None
        return GenerationPage(
            generations=[self._row_to_record(row) for row in page],
            next_cursor=next_cursor,
        )

    def delete_generation(self, generation_id: str, owner_id: str) -> GenerationRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "DELETE FROM generations WHERE id = %s AND owner_id = %s RETURNING *",
                (generation_id, owner_id),
            ).fetchone()
            conn.commit()
        if row is None:
            return None
        return self._row_to_record(row)

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        """Parse JSON-like value into dict; fall back to empty dict."""
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_record(cls, row: Any) -> GenerationRecord:
        """Map one DB row to the canonical GenerationRecord model."""
        return GenerationRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            mode=row["mode"],
            prompt=row["prompt"],
            settings=cls._parse_json_object(row["settings_json"]),
            result=GenerationResult.model_validate(cls._parse_json_object(row["result_json"])),
            reference_image_count=int(row["reference_image_count"]),
            created_at=cls._parse_datetime(row["created_at"]),
        )

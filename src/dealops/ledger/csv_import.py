"""CSV import of deals into the ledger.

Parsing:
- Delimiter auto-detected from the header line (``;`` or ``,``)
- Quoted fields, doubled quotes, embedded delimiters and newlines via ``csv``
- Header aliases map exported column names onto ledger fields; any other
  non-empty column lands in ``custom_fields``

Processing:
- Foreign keys resolved through a LookupCache loaded once per run
  (contacts by email and phone key, stages by normalized name)
- Unknown contacts with a name and an email or phone are created on the fly
- At most one deal per (contact, origin) per import
- Rows upserted by external id in chunks, with a short pause between chunks

Small files are imported synchronously (CsvImporter.import_text). Large ones
are stored on disk and become an ImportJob that ImportJobRunner advances one
chunk per call, persisting progress after each chunk so a restart resumes
where it stopped.
"""

from __future__ import annotations

import asyncio
import csv
import io
import math
import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import BaseModel, EmailStr, Field, TypeAdapter, ValidationError

from src.dealops.core.monitoring import record_reconciliation
from src.dealops.ledger.errors import InvalidInputError
from src.dealops.ledger.matching import normalize_email, normalize_name, phone_key
from src.dealops.ledger.schemas import (
    ContactCreate,
    ContactRead,
    DealUpsert,
    ImportErrorDetail,
    ImportJobRead,
    ImportStats,
    QueueStatus,
    StageRead,
)

logger = structlog.get_logger(__name__)

OPERATION = "csv_import"

# ── Column Aliases ──────────────────────────────────────────────────────────

ID_COLUMNS = ("id", "clint_id", "deal_id", "external_id")
NAME_COLUMNS = ("name", "nome", "deal_name", "title", "titulo")
EMAIL_COLUMNS = ("email", "e-mail", "contact_email")
PHONE_COLUMNS = ("phone", "complete_phone", "telefone", "celular", "whatsapp")
OWNER_COLUMNS = ("owner", "dono", "user_email")
STAGE_COLUMNS = ("stage", "etapa")
VALUE_COLUMNS = ("value", "valor")
TAG_COLUMNS = ("tags",)
CONTACT_COLUMNS = ("contact", "contato", "contact_name")
ORIGIN_COLUMNS = ("origin", "origin_id", "origem")

STANDARD_COLUMNS = frozenset(
    ID_COLUMNS
    + NAME_COLUMNS
    + EMAIL_COLUMNS
    + PHONE_COLUMNS
    + OWNER_COLUMNS
    + STAGE_COLUMNS
    + VALUE_COLUMNS
    + TAG_COLUMNS
    + CONTACT_COLUMNS
    + ORIGIN_COLUMNS
)

_EMAIL = TypeAdapter(EmailStr)
_VALUE_CHARS = re.compile(r"[^\d.,-]")
_TAG_SPLIT = re.compile(r"[,;|]")


class RowError(Exception):
    """A single CSV row could not be converted."""


def column_key(header: str) -> str:
    """Alias lookup form of a header: trimmed and lowercased."""
    return header.strip().lower()


class CsvRow(BaseModel):
    """One parsed data record with its 1-based starting line in the file.

    ``fields`` is keyed by the header text exactly as written and holds the
    cell text exactly as written.
    """

    line: int
    fields: dict[str, str] = Field(default_factory=dict)
    error: str | None = None

    def first(self, columns: tuple[str, ...]) -> str:
        """Trimmed value of the first alias column with a non-blank cell."""
        by_key: dict[str, str] = {}
        for header, value in self.fields.items():
            by_key.setdefault(column_key(header), value)
        for column in columns:
            value = by_key.get(column, "").strip()
            if value:
                return value
        return ""

    def custom_fields(self) -> dict[str, str]:
        """Non-blank cells of columns that are not ledger fields, verbatim."""
        return {
            header: value
            for header, value in self.fields.items()
            if column_key(header) and column_key(header) not in STANDARD_COLUMNS and value.strip()
        }


# ── Parsing ─────────────────────────────────────────────────────────────────


def detect_delimiter(header_line: str) -> str:
    """Pick ``;`` when it outnumbers ``,`` on the header line, else ``,``."""
    return ";" if header_line.count(";") > header_line.count(",") else ","


def decode_csv(data: bytes) -> str:
    """Decode an uploaded file (UTF-8 with optional BOM, else Latin-1 spreadsheet exports)."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def parse_csv(text: str) -> list[CsvRow]:
    """Parse CSV text into rows keyed by header.

    Headers and cells are kept verbatim, so a file written by ``csv.writer``
    parses back to the same values. Blank lines are ignored. A record whose
    column count differs from the header is returned with ``error`` set.

    Raises:
        InvalidInputError: If the text has no header or is not valid CSV.
    """
    text = text.lstrip("\ufeff")
    header_line = text.split("\n", 1)[0]
    if not header_line.strip():
        raise InvalidInputError("CSV file is empty")

    reader = csv.reader(io.StringIO(text, newline=""), delimiter=detect_delimiter(header_line))
    try:
        headers = next(reader)
        rows: list[CsvRow] = []
        consumed = reader.line_num
        for values in reader:
            line = consumed + 1
            consumed = reader.line_num
            if not values or (len(values) == 1 and not values[0].strip()):
                continue
            if len(values) != len(headers):
                rows.append(
                    CsvRow(
                        line=line,
                        fields=dict(zip(headers, values)),
                        error=f"Expected {len(headers)} columns, found {len(values)}",
                    )
                )
                continue
            rows.append(CsvRow(line=line, fields=dict(zip(headers, values))))
    except csv.Error as exc:
        raise InvalidInputError(f"Malformed CSV: {exc}")
    return rows


def parse_value(raw: str) -> float | None:
    """Parse a monetary value in Brazilian or US notation.

    ``R$ 1.234,56``, ``1,234.56`` and ``1234,56`` all give 1234.56.

    Raises:
        RowError: If the text holds no parseable number.
    """
    cleaned = _VALUE_CHARS.sub("", raw or "")
    if not cleaned:
        return None
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif cleaned.count(",") > 1:
        cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")
    try:
        return float(cleaned)
    except ValueError:
        raise RowError(f"Invalid value: {raw}")


def split_tags(raw: str) -> list[str] | None:
    if not raw:
        return None
    return [t.strip() for t in _TAG_SPLIT.split(raw) if t.strip()]


def is_valid_email(value: str) -> bool:
    try:
        _EMAIL.validate_python(value)
    except ValidationError:
        return False
    return True


# ── Lookup Cache ────────────────────────────────────────────────────────────


class LookupCache:
    """In-memory foreign key lookups for one import run."""

    def __init__(self) -> None:
        self.contacts_by_email: dict[str, str] = {}
        self.contacts_by_phone: dict[str, str] = {}
        self.stages_by_name: dict[str, str] = {}

    @classmethod
    async def load(cls, repository, origin_id: str | None) -> LookupCache:
        cache = cls()
        contacts, stages = await asyncio.gather(
            repository.list_contacts(),
            repository.list_stages(origin_id),
        )
        for contact in contacts:
            cache.add_contact(contact)
        for stage in stages:
            cache.add_stage(stage)
        logger.debug(
            "csv_import.cache_loaded",
            contacts=len(contacts),
            stages=len(stages),
        )
        return cache

    def add_contact(self, contact: ContactRead) -> None:
        email = normalize_email(contact.email)
        if email:
            self.contacts_by_email.setdefault(email, contact.id)
        key = phone_key(contact.phone)
        if key:
            self.contacts_by_phone.setdefault(key, contact.id)

    def add_stage(self, stage: StageRead) -> None:
        name = normalize_name(stage.stage_name)
        if name:
            self.stages_by_name.setdefault(name, stage.id)

    def find_contact(self, email: str | None, phone: str | None) -> str | None:
        normalized = normalize_email(email)
        if normalized and normalized in self.contacts_by_email:
            return self.contacts_by_email[normalized]
        key = phone_key(phone)
        if key:
            return self.contacts_by_phone.get(key)
        return None

    def find_stage(self, name: str | None) -> str | None:
        return self.stages_by_name.get(normalize_name(name)) if name else None


# ── Importer ────────────────────────────────────────────────────────────────


class CsvImporter:
    """Converts parsed rows into ledger upserts.

    Args:
        repository: LedgerRepository.
        chunk_size: Rows per upsert statement.
        chunk_delay: Seconds to pause between upserts.
        max_error_details: Cap on stored per-row error details.
    """

    def __init__(
        self,
        repository,
        chunk_size: int = 100,
        chunk_delay: float = 0.05,
        max_error_details: int = 100,
    ) -> None:
        self._repo = repository
        self._chunk_size = max(1, chunk_size)
        self._chunk_delay = chunk_delay
        self._max_errors = max_error_details

    async def import_text(
        self,
        text: str,
        origin_id: str | None = None,
        owner_email: str | None = None,
    ) -> ImportStats:
        """Parse and import a whole CSV document synchronously."""
        started = time.perf_counter()
        rows = parse_csv(text)
        cache = await LookupCache.load(self._repo, origin_id)
        stats = ImportStats()
        await self.import_rows(rows, cache, origin_id, owner_email, stats, set())
        stats.duration_seconds = round(time.perf_counter() - started, 3)
        logger.info(
            "csv_import.completed",
            total=stats.total,
            imported=stats.imported,
            updated=stats.updated,
            skipped=stats.skipped,
            errors=stats.errors,
            contacts_created=stats.contacts_created,
            duration_seconds=stats.duration_seconds,
        )
        return stats

    async def import_rows(
        self,
        rows: list[CsvRow],
        cache: LookupCache,
        origin_id: str | None,
        owner_email: str | None,
        stats: ImportStats,
        processed_contact_origins: set[str],
    ) -> None:
        """Convert and upsert rows, accumulating into ``stats``.

        ``processed_contact_origins`` holds the (contact, origin) keys already
        imported and is updated in place.
        """
        pending: list[DealUpsert] = []
        flushed = False
        for row in rows:
            stats.total += 1
            external_id = row.first(ID_COLUMNS)
            if row.error:
                self._add_error(stats, row.line, external_id, row.error)
                continue

            name = row.first(NAME_COLUMNS)
            if not external_id and not name:
                stats.skipped += 1
                continue
            if not external_id or not name:
                missing = "id" if not external_id else "name"
                self._add_error(stats, row.line, external_id, f"Missing required field: {missing}")
                continue

            try:
                deal = await self._convert_row(
                    row, external_id, name, cache, origin_id, owner_email, stats
                )
            except RowError as exc:
                self._add_error(stats, row.line, external_id, str(exc))
                continue

            if deal.contact_id and deal.origin_id:
                key = f"{deal.contact_id}:{deal.origin_id}"
                if key in processed_contact_origins:
                    stats.skipped += 1
                    continue
                processed_contact_origins.add(key)

            pending.append(deal)
            if len(pending) >= self._chunk_size:
                if flushed:
                    await asyncio.sleep(self._chunk_delay)
                await self._flush(pending, stats)
                flushed = True
                pending = []

        if pending:
            if flushed:
                await asyncio.sleep(self._chunk_delay)
            await self._flush(pending, stats)

    async def _convert_row(
        self,
        row: CsvRow,
        external_id: str,
        name: str,
        cache: LookupCache,
        origin_id: str | None,
        owner_email: str | None,
        stats: ImportStats,
    ) -> DealUpsert:
        email = row.first(EMAIL_COLUMNS)
        if email and not is_valid_email(email):
            email = ""
        phone = row.first(PHONE_COLUMNS)

        row_origin = row.first(ORIGIN_COLUMNS)
        if row_origin:
            try:
                row_origin = str(uuid.UUID(row_origin))
            except ValueError:
                raise RowError(f"Invalid origin id: {row_origin}")
        deal_origin = row_origin or origin_id or None

        contact_id = cache.find_contact(email, phone)
        if contact_id is None and (email or phone):
            contact_name = row.first(CONTACT_COLUMNS) or name
            try:
                contact = await self._repo.create_contact(
                    ContactCreate(
                        name=contact_name,
                        email=email.lower() or None,
                        phone=phone or None,
                        origin_id=deal_origin,
                    )
                )
            except Exception as exc:
                logger.warning(
                    "csv_import.contact_create_failed",
                    line=row.line,
                    external_id=external_id,
                    exc_info=True,
                )
                raise RowError(f"Could not create contact: {exc}")
            cache.add_contact(contact)
            contact_id = contact.id
            stats.contacts_created += 1

        return DealUpsert(
            external_id=external_id,
            name=name,
            value=parse_value(row.first(VALUE_COLUMNS)),
            contact_id=contact_id,
            origin_id=deal_origin,
            stage_id=cache.find_stage(row.first(STAGE_COLUMNS)),
            owner_id=owner_email or row.first(OWNER_COLUMNS) or None,
            tags=split_tags(row.first(TAG_COLUMNS)),
            custom_fields=row.custom_fields(),
            line=row.line,
        )

    async def _flush(self, batch: list[DealUpsert], stats: ImportStats) -> None:
        # Postgres rejects one statement touching the same key twice: last row wins
        unique: dict[str, DealUpsert] = {}
        for deal in batch:
            unique[deal.external_id] = deal
        collapsed = len(batch) - len(unique)

        try:
            inserted, updated = await self._repo.upsert_deals(list(unique.values()))
        except Exception as exc:
            logger.error(
                "csv_import.chunk_failed",
                rows=len(batch),
                first_line=batch[0].line,
                exc_info=True,
            )
            for deal in batch:
                self._add_error(stats, deal.line, deal.external_id, str(exc))
            return

        stats.imported += inserted
        stats.updated += updated + collapsed
        record_reconciliation(OPERATION, "inserted", inserted)
        record_reconciliation(OPERATION, "updated", updated + collapsed)

    def _add_error(self, stats: ImportStats, line: int, external_id: str, error: str) -> None:
        stats.errors += 1
        record_reconciliation(OPERATION, "error")
        if len(stats.error_details) < self._max_errors:
            stats.error_details.append(
                ImportErrorDetail(line=line, external_id=external_id or "unknown", error=error)
            )


# ── File Storage ────────────────────────────────────────────────────────────


class CsvFileStorage:
    """Stores uploaded CSV files for background import jobs."""

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir)

    async def save(self, filename: str, data: bytes) -> str:
        safe_name = re.sub(r"[^A-Za-z0-9._-]+", "_", Path(filename or "upload.csv").name)
        path = self._base_dir / f"{uuid.uuid4().hex}_{safe_name}"

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        return str(path)

    async def read_text(self, file_path: str) -> str:
        data = await asyncio.to_thread(Path(file_path).read_bytes)
        return decode_csv(data)


# ── Background Jobs ─────────────────────────────────────────────────────────


class ImportJobRunner:
    """Creates import jobs and advances them one chunk at a time.

    Args:
        repository: LedgerRepository.
        importer: CsvImporter used for row conversion and upserts.
        storage: CsvFileStorage holding the uploaded files.
        chunk_size: Rows handled per advance() call.
        max_stored_errors: Cap on the error list persisted on the job.
        max_attempts: Failed advance() calls after which the job is marked failed.
    """

    def __init__(
        self,
        repository,
        importer: CsvImporter,
        storage: CsvFileStorage,
        chunk_size: int = 1000,
        max_stored_errors: int = 100,
        max_attempts: int = 3,
    ) -> None:
        self._repo = repository
        self._importer = importer
        self._storage = storage
        self._chunk_size = max(1, chunk_size)
        self._max_errors = max_stored_errors
        self._max_attempts = max(1, max_attempts)

    async def submit(
        self,
        filename: str,
        data: bytes,
        origin_id: str | None,
        owner_email: str | None,
    ) -> ImportJobRead:
        path = await self._storage.save(filename, data)
        job = await self._repo.create_import_job(path, origin_id, owner_email)
        logger.info("csv_import.job_created", job_id=job.id, file_path=path, size=len(data))
        return job

    async def advance(self) -> ImportJobRead | None:
        """Process the next chunk of the oldest unfinished job.

        A chunk that raises is retried on the next call; after max_attempts
        consecutive failures the job is marked failed so later jobs proceed.

        Returns:
            The job's refreshed state, or None when no job is waiting.
        """
        job = await self._repo.next_import_job()
        if job is None:
            return None

        try:
            return await self._advance_job(job)
        except Exception as exc:
            attempts = job.attempts + 1
            exhausted = attempts >= self._max_attempts
            logger.error(
                "csv_import.job_chunk_failed",
                job_id=job.id,
                chunk=job.current_chunk,
                attempts=attempts,
                exhausted=exhausted,
                exc_info=True,
            )
            record_reconciliation(OPERATION, "job_error")
            fields = {"attempts": attempts, "error_message": str(exc)}
            if exhausted:
                fields.update(status=QueueStatus.FAILED, completed_at=datetime.now(timezone.utc))
            await self._repo.update_import_job(job.id, **fields)
            return await self._repo.get_import_job(job.id)

    async def _advance_job(self, job: ImportJobRead) -> ImportJobRead | None:
        now = datetime.now(timezone.utc)
        if job.status == QueueStatus.PENDING:
            await self._repo.update_import_job(
                job.id, status=QueueStatus.PROCESSING, started_at=now
            )

        try:
            rows = parse_csv(await self._storage.read_text(job.file_path))
        except (OSError, InvalidInputError) as exc:
            logger.error("csv_import.job_failed", job_id=job.id, exc_info=True)
            await self._repo.update_import_job(
                job.id,
                status=QueueStatus.FAILED,
                error_message=str(exc),
                completed_at=now,
            )
            return await self._repo.get_import_job(job.id)

        total_chunks = math.ceil(len(rows) / self._chunk_size)
        if job.current_chunk >= total_chunks:
            await self._repo.update_import_job(
                job.id,
                status=QueueStatus.COMPLETED,
                total_chunks=total_chunks,
                total_lines=len(rows),
                completed_at=now,
            )
            return await self._repo.get_import_job(job.id)

        start = job.current_chunk * self._chunk_size
        chunk = rows[start:start + self._chunk_size]
        cache = await LookupCache.load(self._repo, job.origin_id)
        processed = set(job.processed_contact_origins)
        stats = ImportStats()
        await self._importer.import_rows(
            chunk, cache, job.origin_id, job.owner_email, stats, processed
        )

        next_chunk = job.current_chunk + 1
        is_complete = next_chunk >= total_chunks
        errors = job.errors + [e.model_dump() for e in stats.error_details]
        await self._repo.update_import_job(
            job.id,
            status=QueueStatus.COMPLETED if is_complete else QueueStatus.PROCESSING,
            total_processed=job.total_processed + stats.imported + stats.updated,
            total_skipped=job.total_skipped + stats.skipped + stats.errors,
            current_chunk=next_chunk,
            attempts=0,
            total_chunks=total_chunks,
            total_lines=len(rows),
            contacts_created=job.contacts_created + stats.contacts_created,
            errors=errors[: self._max_errors],
            processed_contact_origins=sorted(processed),
            completed_at=datetime.now(timezone.utc) if is_complete else None,
        )
        logger.info(
            "csv_import.job_chunk_processed",
            job_id=job.id,
            chunk=next_chunk,
            total_chunks=total_chunks,
            imported=stats.imported,
            updated=stats.updated,
            skipped=stats.skipped,
            errors=stats.errors,
        )
        return await self._repo.get_import_job(job.id)

"""Per-request orchestration of scanning, validation and quarantine."""

from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass, replace
from time import perf_counter
from typing import AsyncIterable, List, Optional

from .contracts import DEFAULT_READ_CHUNK_SIZE
from .errors import IngestionError, SessionTooLarge, SizeLimitExceeded, Unauthorized
from .multipart import BoundaryScanner, Section, parse_boundary, parse_options_header
from .observability import IngestionObserver
from .policy import Policy
from .quarantine import QuarantineCoordinator, QuarantineTicket
from .records import (
    IngestionManifest,
    SectionOutcome,
    StorageMetadata,
    UploadSession,
    build_manifest,
    make_id,
)
from .section_reader import ByteBudget, SectionReader
from .validation import (
    SectionProbe,
    ValidationPipeline,
    file_extension,
    first_failure,
    sanitize_filename,
)

logger = logging.getLogger("stream_ingest.session")


@dataclass
class IngestionRequest:
    """What the request source hands over: headers, body stream and gate result."""

    content_type: Optional[str]
    body: AsyncIterable[bytes]
    declared_length: Optional[int] = None
    antiforgery_verified: bool = False


class IngestionSession:
    """Processes one request's sections in stream order.

    Parsing is sequential; each section that reaches the holding area gets
    its own quarantine task, so scans overlap with parsing of later
    sections. ``run`` returns only after every task has settled.
    """

    def __init__(
        self,
        policy: Policy,
        coordinator: QuarantineCoordinator,
        pipeline: Optional[ValidationPipeline] = None,
        session_id: Optional[str] = None,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> None:
        self.policy = policy
        self.coordinator = coordinator
        self.pipeline = pipeline or ValidationPipeline()
        self.session_id = session_id or make_id("upl")
        self.read_chunk_size = read_chunk_size
        self.observer = IngestionObserver(self.session_id)
        self.upload: Optional[UploadSession] = None
        self._tasks: List[asyncio.Task] = []
        self._tickets: List[QuarantineTicket] = []

    async def run(self, request: IngestionRequest) -> IngestionManifest:
        start = perf_counter()
        upload = UploadSession(
            session_id=self.session_id,
            body_limit=self.policy.max_body_size,
            antiforgery_verified=request.antiforgery_verified,
        )
        self.upload = upload

        try:
            if not request.antiforgery_verified:
                raise Unauthorized("Antiforgery validation failed")
            if request.declared_length is not None and request.declared_length > self.policy.body_ceiling:
                raise SessionTooLarge(
                    f"Declared body of {request.declared_length} bytes exceeds the limit of "
                    f"{self.policy.body_ceiling} bytes",
                    {"declared_length": request.declared_length, "limit": self.policy.body_ceiling},
                )
            boundary = parse_boundary(request.content_type, self.policy.boundary_length_limit)
        except IngestionError as exc:
            self.observer.log_error(exc.code, exc.message)
            raise

        scanner = BoundaryScanner(
            request.body,
            boundary,
            headers_length_limit=self.policy.headers_length_limit,
            headers_count_limit=self.policy.headers_count_limit,
        )
        budget = ByteBudget(self.policy.max_body_size)

        try:
            async for section in scanner:
                if not await self._process_section(scanner, section, budget, upload):
                    upload.truncated = True
                    break
            await self._await_quarantine()
        except BaseException as exc:
            if isinstance(exc, IngestionError):
                self.observer.log_error(exc.code, exc.message, exc.details)
            await self._abort()
            raise
        finally:
            upload.bytes_read = budget.used

        manifest = build_manifest(upload)
        self.observer.log_session_end(manifest.entries, manifest.bytes_read, (perf_counter() - start) * 1000)
        return manifest

    async def _process_section(
        self,
        scanner: BoundaryScanner,
        section: Section,
        budget: ByteBudget,
        upload: UploadSession,
    ) -> bool:
        """Handle one section; returns False once the session budget is spent."""
        self.observer.log_section_start(section.index, section.field_name, section.filename)
        outcome = SectionOutcome(index=section.index, field_name=section.field_name, is_file=section.is_file)
        if section.is_file:
            outcome.sanitized_name = sanitize_filename(section.filename, self.policy.max_filename_length)
        upload.outcomes.append(outcome)

        limit = self.policy.max_section_size if section.is_file else self.policy.value_length_limit
        reader = SectionReader(scanner, section, budget, limit, chunk_size=self.read_chunk_size)
        try:
            budget.consume(len(section.raw_headers))
            if section.is_file:
                await self._ingest_file(section, reader, outcome)
            else:
                await self._ingest_field(section, reader, outcome, upload)
            if not reader.exhausted:
                await reader.drain()
        except SizeLimitExceeded as exc:
            if not outcome.is_terminal:
                outcome.settle("rejected", exc.code, exc.message)
            self.observer.log_error(exc.code, exc.message, {"index": section.index, **exc.details})
            if exc.session_wide:
                return False
            try:
                await reader.drain()
            except SizeLimitExceeded:
                return False
        return True

    async def _ingest_file(self, section: Section, reader: SectionReader, outcome: SectionOutcome) -> None:
        probe = SectionProbe(declared_name=section.filename)
        if not self._apply_checks(probe, outcome):
            return

        extension = file_extension(outcome.sanitized_name or "")
        # At least one byte, so an empty body is known before a slot is opened.
        head = await reader.read_prefix(max(self.policy.signature_length(extension), 1))
        probe = replace(probe, head=head)
        if reader.exhausted:
            probe = replace(probe, byte_length=reader.bytes_read)
        if not self._apply_checks(probe, outcome):
            return

        slot = await self.coordinator.holding_area.open_slot(self.session_id, section.index)
        try:
            if head:
                await slot.write(head)
            async for chunk in reader:
                await slot.write(chunk)
            if probe.byte_length is None:
                probe = replace(probe, byte_length=reader.bytes_read)
                if not self._apply_checks(probe, outcome):
                    await slot.discard()
                    return
            held = await slot.seal()
            metadata = StorageMetadata(
                token=slot.token,
                session_id=self.session_id,
                field_name=section.field_name,
                sanitized_name=outcome.sanitized_name or "",
                content_type=section.content_type,
                size=held.size,
                sha256=held.sha256,
            )
            ticket = await self.coordinator.admit(outcome, slot, metadata, observer=self.observer)
        except BaseException:
            await slot.discard()
            raise

        self._tickets.append(ticket)
        self._tasks.append(asyncio.create_task(self.coordinator.settle(ticket, self.policy.scan_timeout)))

    async def _ingest_field(
        self,
        section: Section,
        reader: SectionReader,
        outcome: SectionOutcome,
        upload: UploadSession,
    ) -> None:
        accepted = sum(len(values) for values in upload.form_values.values())
        if accepted >= self.policy.value_count_limit:
            outcome.settle(
                "rejected",
                "SIZE_LIMIT_EXCEEDED",
                f"Form value count limit {self.policy.value_count_limit} exceeded",
            )
            return

        parts = [chunk async for chunk in reader]
        value = b"".join(parts).decode(_field_charset(section), errors="replace")
        upload.form_values.setdefault(section.field_name, []).append(value)
        outcome.settle("accepted")

    def _apply_checks(self, probe: SectionProbe, outcome: SectionOutcome) -> bool:
        verdicts = self.pipeline.evaluate(probe, self.policy)
        outcome.verdicts = verdicts
        failure = first_failure(verdicts)
        if failure is not None:
            outcome.settle("rejected", failure.code, failure.reason)
            self.observer.log_verdicts(outcome.index, verdicts)
            return False
        if self.pipeline.is_complete(verdicts):
            self.observer.log_verdicts(outcome.index, verdicts)
        return True

    async def _await_quarantine(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def _abort(self) -> None:
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("[%s] session aborted, %d quarantine tasks cancelled", self.session_id, len(pending))
        # Tasks cancelled before their first step never ran their own cleanup.
        for ticket in self._tickets:
            await self.coordinator.abandon(ticket)


def _field_charset(section: Section) -> str:
    if not section.content_type:
        return "utf-8"
    _, params = parse_options_header(section.content_type)
    charset = params.get("charset", "utf-8")
    try:
        codecs.lookup(charset)
    except LookupError:
        return "utf-8"
    return charset

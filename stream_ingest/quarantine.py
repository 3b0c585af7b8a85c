"""Holding area and the quarantine commit/rollback protocol."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

from .contracts import QUARANTINE_TRANSITIONS, SCAN_FAILURE_CODES, QuarantineState
from .errors import ScanError, StorageError
from .observability import IngestionObserver
from .records import SectionOutcome, StorageMetadata
from .scanning import HeldContent, ScanVerdictProvider
from .storage import StorageAdapter

logger = logging.getLogger("stream_ingest.quarantine")

_FINAL_STATES: set[QuarantineState] = {"stored", "discarded", "failed"}

# Client-facing reasons; causes go to the log only.
STORAGE_FAILED_REASON = "The file could not be stored"
SCAN_FAILED_REASON = "The malware scanner could not evaluate the file"


class HoldingSlot:
    """One temporary, owner-only, non-executable file addressed by a generated token."""

    def __init__(self, token: str, path: Path) -> None:
        self.token = token
        self.path = path
        self.bytes_written = 0
        self._digest = hashlib.sha256()
        self._handle = None
        self._sealed: Optional[HeldContent] = None
        self.removed = False

    async def create(self) -> None:
        def _create():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            return os.fdopen(fd, "wb")

        self._handle = await asyncio.to_thread(_create)

    async def write(self, chunk: bytes) -> None:
        if self._handle is None:
            raise RuntimeError(f"Holding slot {self.token} is not open for writing")
        await asyncio.to_thread(self._handle.write, chunk)
        self._digest.update(chunk)
        self.bytes_written += len(chunk)

    async def seal(self) -> HeldContent:
        if self._sealed is not None:
            return self._sealed
        if self._handle is None:
            raise RuntimeError(f"Holding slot {self.token} is not open for writing")
        handle, self._handle = self._handle, None

        def _close() -> None:
            handle.flush()
            os.fsync(handle.fileno())
            handle.close()

        await asyncio.to_thread(_close)
        self._sealed = HeldContent(
            token=self.token,
            path=self.path,
            size=self.bytes_written,
            sha256=self._digest.hexdigest(),
        )
        return self._sealed

    async def iter_content(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        handle = await asyncio.to_thread(open, self.path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, chunk_size)
                if not chunk:
                    return
                yield chunk
        finally:
            await asyncio.to_thread(handle.close)

    async def discard(self) -> None:
        if self.removed:
            return
        handle, self._handle = self._handle, None

        def _remove() -> None:
            if handle is not None:
                handle.close()
            self.path.unlink(missing_ok=True)

        await asyncio.to_thread(_remove)
        self.removed = True


class HoldingArea:
    """Directory of slots shared by concurrent sessions; tokens never collide."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir.resolve()

    async def open_slot(self, session_id: str, section_index: int) -> HoldingSlot:
        token = f"{session_id}_{section_index:04d}_{secrets.token_hex(8)}"
        slot = HoldingSlot(token=token, path=self.root_dir / f"{token}.hold")
        await slot.create()
        return slot

    async def list_tokens(self) -> List[str]:
        def _collect() -> List[str]:
            if not self.root_dir.exists():
                return []
            return sorted(path.stem for path in self.root_dir.glob("*.hold") if path.is_file())

        return await asyncio.to_thread(_collect)


@dataclass
class QuarantineTicket:
    """Per-section quarantine state machine; states only move along allowed edges."""

    outcome: SectionOutcome
    slot: HoldingSlot
    held: HeldContent
    metadata: StorageMetadata
    observer: Optional[IngestionObserver] = None
    state: QuarantineState = "validated"
    history: List[QuarantineState] = field(default_factory=lambda: ["validated"])

    def advance(self, state: QuarantineState) -> None:
        if state not in QUARANTINE_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal quarantine transition {self.state} -> {state} for {self.slot.token}")
        self.state = state
        self.history.append(state)
        self.outcome.quarantine_states = list(self.history)
        if self.observer is not None:
            self.observer.log_quarantine_transition(self.outcome.index, self.slot.token, state)


class QuarantineCoordinator:
    """Moves held content through scan and promotion.

    Any outcome other than an affirmative clean verdict discards the held
    copy. A storage failure keeps it in place for inspection.
    """

    def __init__(
        self,
        holding_area: HoldingArea,
        storage: StorageAdapter,
        scan_provider: Optional[ScanVerdictProvider] = None,
    ) -> None:
        self.holding_area = holding_area
        self.storage = storage
        self.scan_provider = scan_provider

    async def admit(
        self,
        outcome: SectionOutcome,
        slot: HoldingSlot,
        metadata: StorageMetadata,
        observer: Optional[IngestionObserver] = None,
    ) -> QuarantineTicket:
        held = await slot.seal()
        ticket = QuarantineTicket(outcome=outcome, slot=slot, held=held, metadata=metadata, observer=observer)
        outcome.holding_token = slot.token
        ticket.advance("written_to_holding")
        return ticket

    async def settle(self, ticket: QuarantineTicket, scan_timeout: float) -> SectionOutcome:
        outcome = ticket.outcome
        try:
            if self.scan_provider is not None:
                ticket.advance("scan_pending")
                outcome.settle("quarantine_pending")
                verdict_state, detail = await self._await_verdict(ticket.held, scan_timeout)
                ticket.advance(verdict_state)
                if verdict_state != "scan_clean":
                    await ticket.slot.discard()
                    ticket.advance("discarded")
                    outcome.settle("discarded", SCAN_FAILURE_CODES[verdict_state], detail)
                    return outcome

            ticket.advance("promote_pending")
            try:
                receipt = await self.storage.persist(ticket.slot.iter_content(), ticket.metadata)
            except StorageError as exc:
                return self._retain(ticket, exc.message)
            except Exception as exc:
                logger.exception("storage adapter raised unexpectedly token=%s", ticket.slot.token)
                return self._retain(ticket, type(exc).__name__)

            outcome.receipt = receipt
            ticket.advance("stored")
            outcome.settle("stored")
            try:
                await ticket.slot.discard()
            except OSError:
                logger.warning("holding copy not removed after promotion token=%s", ticket.slot.token)
            return outcome
        except asyncio.CancelledError:
            await self.abandon(ticket)
            raise

    async def abandon(self, ticket: QuarantineTicket) -> None:
        """Drop the holding copy of a ticket that never reached a final state."""
        if ticket.state in _FINAL_STATES:
            return
        await ticket.slot.discard()
        ticket.advance("discarded")

    def _retain(self, ticket: QuarantineTicket, cause: str) -> SectionOutcome:
        ticket.advance("failed")
        ticket.outcome.settle("quarantine_failed", "STORAGE_ERROR", STORAGE_FAILED_REASON)
        logger.warning(
            "promotion failed, holding copy retained token=%s path=%s cause=%s",
            ticket.slot.token,
            ticket.slot.path,
            cause,
        )
        return ticket.outcome

    async def _await_verdict(self, held: HeldContent, scan_timeout: float) -> Tuple[QuarantineState, str]:
        assert self.scan_provider is not None
        try:
            verdict = await asyncio.wait_for(self.scan_provider.submit(held), timeout=scan_timeout)
        except asyncio.TimeoutError:
            return "scan_timeout", f"No scan verdict within {scan_timeout:g}s"
        except ScanError as exc:
            logger.warning("scan failed token=%s cause=%s", held.token, exc.message)
            return "scan_error", SCAN_FAILED_REASON
        except Exception:
            logger.exception("scan provider raised unexpectedly token=%s", held.token)
            return "scan_error", SCAN_FAILED_REASON

        if verdict == "clean":
            return "scan_clean", "Scan verdict clean"
        if verdict == "dirty":
            return "scan_dirty", "The file was flagged by the malware scanner"
        return "scan_error", SCAN_FAILED_REASON

"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the remote mirror because:
1. Non-technical users can view their trips directly in Sheets
2. No server setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions (the local store stays authoritative anyway)
- Limited query capabilities (we filter in Python)
- The arrival sequence is read then written, so two devices writing in the
  same instant can be stamped with the same number

gspread is synchronous, so every sheet call runs in a worker thread to keep
the event loop (and the replication bridge) responsive.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from travory.config import GoogleSheetsSettings, get_settings
from travory.models.audit import AuditEvent, AuditEventType, AuditSeverity
from travory.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    RemoteDocument,
    RemoteStoreInterface,
    StorageError,
)


logger = structlog.get_logger(__name__)


# Column mappings for Records sheet
RECORD_COLUMNS = [
    "record_type",
    "record_id",
    "account_id",
    "updated_at",
    "deleted",
    "share_code",
    "payload_json",
    "sequence",
]

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "actor_id",
]


def _column_letter(index: int) -> str:
    """1-based column index to its A1 letter (enough for our narrow sheets)."""
    return chr(ord("A") + index - 1)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create_sheet(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_records_sheet(self) -> gspread.Worksheet:
        """Get or create the Records worksheet."""
        return self._get_or_create_sheet(
            self._settings.records_sheet_name, RECORD_COLUMNS, rows=1000
        )

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self._get_or_create_sheet(
            self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
        )


class GoogleSheetsRemoteStore(RemoteStoreInterface):
    """
    Google Sheets implementation of the remote record mirror.

    One row per record, keyed by (record_type, record_id). The record
    itself is JSON-serialized into a single payload column.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _document_to_row(self, document: RemoteDocument) -> list:
        """Convert a RemoteDocument to a spreadsheet row."""
        return [
            document.record_type,
            document.record_id,
            document.account_id,
            document.updated_at.isoformat(),
            "TRUE" if document.deleted else "FALSE",
            document.share_code or "",
            json.dumps(document.payload),
            str(document.sequence),
        ]

    def _row_to_document(self, row: list) -> RemoteDocument:
        """Convert a spreadsheet row to a RemoteDocument."""
        # Handle missing columns gracefully
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return RemoteDocument(
            record_type=safe_get(0),
            record_id=safe_get(1),
            account_id=safe_get(2),
            updated_at=datetime.fromisoformat(safe_get(3)),
            deleted=safe_get(4).upper() == "TRUE",
            share_code=safe_get(5) or None,
            payload=json.loads(safe_get(6)) if safe_get(6) else {},
            sequence=int(safe_get(7, "0")),
        )

    def _read_documents(self) -> list[RemoteDocument]:
        sheet = self._client.get_records_sheet()
        all_rows = sheet.get_all_values()[1:]  # Skip header

        documents = []
        for row in all_rows:
            if not row or not row[0]:  # Skip empty rows
                continue
            try:
                documents.append(self._row_to_document(row))
            except (ValueError, json.JSONDecodeError) as e:
                logger.warning("remote_row_malformed", row_key=row[:2], error=str(e))
        return documents

    def _upsert_sync(self, document: RemoteDocument) -> bool:
        # One read serves the newer-copy check, the row lookup and the next sequence
        sheet = self._client.get_records_sheet()
        all_rows = sheet.get_all_values()

        existing_row = None
        last_sequence = 0
        # Start from 2 (row 1 is header)
        for idx, row in enumerate(all_rows[1:], start=2):
            if len(row) > 7 and row[7].isdigit():
                last_sequence = max(last_sequence, int(row[7]))
            if len(row) > 1 and row[0] == document.record_type and row[1] == document.record_id:
                existing_row = (idx, row)

        if existing_row is not None:
            idx, row = existing_row
            try:
                current_updated_at = datetime.fromisoformat(row[3])
            except (IndexError, ValueError):
                current_updated_at = None
            if current_updated_at is not None and current_updated_at > document.updated_at:
                return False

        new_row = self._document_to_row(
            document.model_copy(update={"sequence": last_sequence + 1})
        )
        if existing_row is not None:
            last_column = _column_letter(len(RECORD_COLUMNS))
            sheet.update(
                range_name=f"A{idx}:{last_column}{idx}",
                values=[new_row],
                value_input_option="RAW",
            )
        else:
            sheet.append_row(new_row, value_input_option="RAW")
        return True

    async def upsert(self, document: RemoteDocument) -> bool:
        """Insert or replace the row of one record unless a newer row exists."""
        try:
            return await asyncio.to_thread(self._upsert_sync, document)
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to mirror {document.record_type} {document.record_id}: {e}")

    async def get(self, record_type: str, record_id: str) -> Optional[RemoteDocument]:
        """Fetch the row of one record."""
        try:
            documents = await asyncio.to_thread(self._read_documents)
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read remote record: {e}")

        for document in documents:
            if document.record_type == record_type and document.record_id == record_id:
                return document
        return None

    async def fetch_changes(
        self,
        account_id: str,
        since: Optional[int] = None,
    ) -> list[RemoteDocument]:
        """Rows visible to an account written after sequence `since`, in arrival order."""
        try:
            documents = await asyncio.to_thread(self._read_documents)
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to fetch remote changes: {e}")

        changes = [
            document for document in documents
            if document.is_visible_to(account_id)
            and (since is None or document.sequence > since)
        ]
        changes.sort(key=lambda d: d.sequence)
        return changes

    async def find_by_share_code(self, share_code: str) -> Optional[RemoteDocument]:
        """Find a live shared plan by its share code."""
        try:
            documents = await asyncio.to_thread(self._read_documents)
        except ConnectionError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to look up share code: {e}")

        for document in documents:
            if document.share_code == share_code and not document.deleted:
                return document
        return None


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=safe_get(5) or None,
            correlation_id=UUID(safe_get(6)) if safe_get(6) else None,
            description=safe_get(7),
            details=json.loads(safe_get(8)) if safe_get(8) else {},
            error_message=safe_get(9) or None,
            actor_id=safe_get(10) or None,
        )

    def _append_sync(self, event: AuditEvent) -> None:
        sheet = self._client.get_audit_sheet()
        sheet.append_row(event.to_sheets_row(), value_input_option="RAW")

    def _read_events(self) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        all_rows = sheet.get_all_values()[1:]

        events = []
        for row in all_rows:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except (ValueError, json.JSONDecodeError) as e:
                logger.warning("audit_row_malformed", event_id=row[0], error=str(e))
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _append_with_retry(self, event: AuditEvent) -> None:
        await asyncio.to_thread(self._append_sync, event)

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            await self._append_with_retry(event)
            return True
        except Exception as e:
            # Don't raise - audit logging should not break the main flow
            logger.warning(
                "audit_append_failed",
                event_id=str(event.event_id),
                error=str(e),
            )
            return False

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by correlation ID."""
        try:
            events = await asyncio.to_thread(self._read_events)
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events = [e for e in events if e.correlation_id == correlation_id]
        # Sort chronologically
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get events by entity."""
        try:
            events = await asyncio.to_thread(self._read_events)
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events = [
            e for e in events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        try:
            events = await asyncio.to_thread(self._read_events)
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

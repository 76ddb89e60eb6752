"""Remote task store backed by the Cloud Firestore v1 REST API."""
from __future__ import annotations

import asyncio
import inspect
import json
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import httplib2
from google.auth.exceptions import GoogleAuthError, RefreshError, TransportError
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.logs import get_logger
from core.settings import FIRESTORE
from models.task import Task, fields_to_record, task_from_record, task_to_record
from services.remote import (
    Principal,
    RemoteClient,
    RemoteError,
    RemoteNotFound,
    RemoteRejected,
    RemoteUnavailable,
    SnapshotCallback,
    Subscription,
)


_RETRYABLE_STATUS = {429, 500, 502, 503, 504}
_REJECTED_STATUS = {400, 401, 403, 409, 412}
_MAX_RETRIES = 4
_INITIAL_BACKOFF = 1.0
_MAX_BACKOFF = 16.0

logger = get_logger("firestore")


def _http_status(exc: HttpError) -> int:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status or 0)
    except (TypeError, ValueError):
        return 0


def translate_error(exc: Exception) -> RemoteError:
    """Map transport and API failures onto the remote error taxonomy."""
    if isinstance(exc, RemoteError):
        return exc
    if isinstance(exc, HttpError):
        status = _http_status(exc)
        if status == 404:
            return RemoteNotFound(str(exc))
        if status in _RETRYABLE_STATUS:
            return RemoteUnavailable(f"HTTP {status}: {exc}")
        if status in _REJECTED_STATUS:
            return RemoteRejected(f"HTTP {status}: {exc}")
        return RemoteRejected(f"HTTP {status or '?'}: {exc}")
    if isinstance(exc, RefreshError):
        return RemoteRejected(f"Authentication failed: {exc}")
    if isinstance(exc, (TransportError, httplib2.HttpLib2Error, OSError)):
        return RemoteUnavailable(str(exc) or exc.__class__.__name__)
    if isinstance(exc, GoogleAuthError):
        return RemoteRejected(str(exc))
    return RemoteError(str(exc))


# ----------------------------------------------------------------------
# Firestore value encoding
def encode_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    return {"stringValue": str(value)}


def encode_fields(record: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {key: encode_value(value) for key, value in record.items()}


def decode_value(value: Mapping[str, Any]) -> Any:
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return value["timestampValue"]
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "arrayValue" in value:
        return [decode_value(item) for item in (value["arrayValue"] or {}).get("values", [])]
    if "mapValue" in value:
        return decode_fields((value["mapValue"] or {}).get("fields", {}))
    return None


def decode_fields(fields: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    return {key: decode_value(value) for key, value in (fields or {}).items()}


def _snapshot_fingerprint(tasks: List[Task]) -> str:
    records = sorted((task_to_record(task) for task in tasks), key=lambda r: r["id"])
    return json.dumps(records, sort_keys=True)


class FirestoreClient(RemoteClient):
    """:class:`RemoteClient` over ``projects.databases.documents``.

    Tasks are documents keyed by task id inside one collection. Change
    subscriptions poll the owner query and only call back when the snapshot
    differs from the previous one.
    """

    def __init__(
        self,
        auth: Any,
        *,
        project_id: Optional[str] = None,
        collection: Optional[str] = None,
        database: Optional[str] = None,
        service: Any = None,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.auth = auth
        self.project_id = project_id or FIRESTORE.project_id
        self.collection = collection or FIRESTORE.collection
        self.database = database or FIRESTORE.database
        self.service = service
        self.timeout = timeout if timeout is not None else FIRESTORE.request_timeout_sec
        self.poll_interval = poll_interval if poll_interval is not None else FIRESTORE.poll_interval_sec
        self._sleep = sleep
        self._principal: Optional[Principal] = None

    # ----- paths -----
    @property
    def parent(self) -> str:
        return f"projects/{self.project_id}/databases/{self.database}/documents"

    def document_name(self, task_id: str) -> str:
        return f"{self.parent}/{self.collection}/{task_id}"

    # ----- RemoteClient -----
    async def authenticate(self) -> Principal:
        if self._principal is not None and self.service is not None:
            return self._principal
        await asyncio.to_thread(self._connect)
        self._principal = self.auth.principal()
        return self._principal

    async def upsert(self, task: Task) -> None:
        body = {"fields": encode_fields(task_to_record(task))}
        await self._run(lambda docs: docs.patch(name=self.document_name(task.id), body=body))

    async def patch(self, task_id: str, fields: Mapping[str, Any]) -> None:
        record = fields_to_record(fields)
        record.pop("id", None)
        if not record:
            return
        body = {"fields": encode_fields(record)}
        await self._run(
            lambda docs: docs.patch(
                name=self.document_name(task_id),
                body=body,
                updateMask_fieldPaths=sorted(record.keys()),
                currentDocument_exists=True,
            )
        )

    async def delete(self, task_id: str) -> None:
        try:
            await self._run(lambda docs: docs.delete(name=self.document_name(task_id)))
        except RemoteNotFound:
            logger.debug("Remote task %s already absent", task_id)

    async def fetch_all_for_owner(self, owner_id: str) -> List[Task]:
        body = {
            "structuredQuery": {
                "from": [{"collectionId": self.collection}],
                "where": {
                    "fieldFilter": {
                        "field": {"fieldPath": FIRESTORE.owner_field},
                        "op": "EQUAL",
                        "value": {"stringValue": owner_id},
                    }
                },
            }
        }
        rows = await self._run(lambda docs: docs.runQuery(parent=self.parent, body=body))
        tasks: List[Task] = []
        for row in rows or []:
            document = row.get("document") if isinstance(row, dict) else None
            if not document:
                continue
            record = decode_fields(document.get("fields", {}))
            record.setdefault("id", str(document.get("name", "")).rsplit("/", 1)[-1])
            try:
                tasks.append(task_from_record(record))
            except ValueError as exc:
                logger.warning("Skipping malformed remote task %s: %s", document.get("name"), exc)
        return tasks

    def subscribe(self, owner_id: str, on_change: SnapshotCallback) -> Subscription:
        async def _poll() -> None:
            last: Optional[str] = None
            while True:
                try:
                    tasks = await self.fetch_all_for_owner(owner_id)
                except RemoteError as exc:
                    logger.warning("Snapshot poll for %s failed: %s", owner_id, exc)
                else:
                    fingerprint = _snapshot_fingerprint(tasks)
                    if fingerprint != last:
                        last = fingerprint
                        try:
                            result = on_change(tasks)
                            if inspect.isawaitable(result):
                                await result
                        except Exception:
                            logger.exception("Snapshot listener for %s failed", owner_id)
                await asyncio.sleep(self.poll_interval)

        poller = asyncio.get_running_loop().create_task(_poll())
        logger.debug("Subscribed to snapshots for %s", owner_id)
        return Subscription(owner_id, cancel=poller.cancel)

    # ----- internal helpers -----
    def _connect(self) -> None:
        if not self.project_id:
            raise RemoteRejected("Firestore project id is not configured")
        try:
            self.auth.ensure_credentials()
            if self.service is None:
                self.service = build("firestore", "v1", http=self._new_http(), cache_discovery=False)
        except RuntimeError as exc:
            raise RemoteRejected(str(exc)) from exc
        except (HttpError, GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
            raise translate_error(exc) from exc

    def _new_http(self) -> AuthorizedHttp:
        # httplib2.Http is not thread-safe: every worker-thread request gets its own.
        return AuthorizedHttp(self.auth.get_credentials(), http=httplib2.Http(timeout=self.timeout))

    def _documents(self):
        if self.service is None:
            raise RemoteUnavailable("Firestore service is not connected")
        return self.service.projects().databases().documents()

    async def _run(self, make_request: Callable[[Any], Any]) -> Any:
        return await asyncio.to_thread(self._call_with_backoff, make_request)

    def _call_with_backoff(self, make_request: Callable[[Any], Any]) -> Any:
        delay = _INITIAL_BACKOFF
        http = self._new_http()
        for attempt in range(_MAX_RETRIES):
            try:
                return make_request(self._documents()).execute(http=http)
            except HttpError as exc:
                if _http_status(exc) not in _RETRYABLE_STATUS or attempt == _MAX_RETRIES - 1:
                    raise translate_error(exc) from exc
            except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
                raise translate_error(exc) from exc
            self._sleep(delay)
            delay = min(delay * 2, _MAX_BACKOFF)
        raise RemoteUnavailable("Retries exhausted")


__all__ = [
    "FirestoreClient",
    "decode_fields",
    "decode_value",
    "encode_fields",
    "encode_value",
    "translate_error",
]

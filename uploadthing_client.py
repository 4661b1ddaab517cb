"""
Thin client for the UploadThing REST API.

Only the calls the backup scripts need are covered. Transport errors from
``requests`` are not wrapped: callers decide whether a timeout means failure
or an outcome that still has to be confirmed.
"""
from __future__ import annotations

import io
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Sequence

import requests


PREPARE_URL = "https://api.uploadthing.com/v7/prepareUpload"
POLL_URL_BASE = "https://api.uploadthing.com/v6/pollUpload"
LIST_FILES_URL = "https://api.uploadthing.com/v6/listFiles"
DELETE_FILES_URL = "https://api.uploadthing.com/v6/deleteFiles"
API_KEY_HEADER = "X-Uploadthing-Api-Key"
ARCHIVE_CONTENT_TYPE = "application/gzip"
DEFAULT_API_TIMEOUT = 30
CONNECT_TIMEOUT = 30
UPLOAD_CHUNK_SIZE = 64 * 1024
UPLOAD_FIELD = "file"


class RemoteStoreError(Exception):
    """Raised when the API answers with an error status or an unreadable body."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UploadCancelled(Exception):
    """Raised inside the upload worker once the transfer deadline has passed."""


@dataclass(frozen=True)
class PreparedUpload:
    upload_url: Optional[str]
    remote_key: Optional[str]
    error: Optional[str] = None


@dataclass(frozen=True)
class PollResult:
    status: Optional[str]
    file_url: Optional[str]


@dataclass(frozen=True)
class RemoteFile:
    key: Optional[str]
    name: Optional[str]
    uploaded_at: Optional[float]


@dataclass(frozen=True)
class DeleteResult:
    success: bool
    deleted_count: int


@dataclass(frozen=True)
class UploadResponse:
    status_code: int
    content: bytes

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text)


class MultipartBody:
    """Streams a single-file multipart/form-data body in fixed-size reads.

    Every read checks ``cancelled`` so a transfer past its deadline stops
    sending instead of running on in the background.
    """

    def __init__(
        self,
        file_path: Path,
        cancelled: threading.Event,
        *,
        field_name: str = UPLOAD_FIELD,
        content_type: str = ARCHIVE_CONTENT_TYPE,
    ) -> None:
        self.boundary = uuid.uuid4().hex
        head = (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{field_name}"; filename="{file_path.name}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode()
        tail = f"\r\n--{self.boundary}--\r\n".encode()
        self._length = len(head) + file_path.stat().st_size + len(tail)
        self._parts: List[BinaryIO] = [io.BytesIO(head), file_path.open("rb"), io.BytesIO(tail)]
        self._cancelled = cancelled

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def __len__(self) -> int:
        return self._length

    def read(self, size: Optional[int] = -1) -> bytes:
        if self._cancelled.is_set():
            raise UploadCancelled("Upload deadline passed while sending the archive.")
        remaining = self._length if size is None or size < 0 else size
        chunks: List[bytes] = []
        while remaining > 0 and self._parts:
            data = self._parts[0].read(remaining)
            if not data:
                self._parts.pop(0).close()
                continue
            chunks.append(data)
            remaining -= len(data)
        return b"".join(chunks)

    def close(self) -> None:
        for part in self._parts:
            part.close()
        self._parts = []


def _first_url(data: Any, fields: Sequence[str]) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for name in fields:
        value = data.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_upload_url(body: Any) -> Optional[str]:
    """URL reported in the body of a finished transfer (``url`` first, then ``ufsUrl``)."""
    return _first_url(body, ("url", "ufsUrl"))


class UploadThingClient:
    def __init__(
        self,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_API_TIMEOUT,
    ) -> None:
        if not api_key:
            raise ValueError("An UploadThing API key is required.")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def _headers(self, *, json_body: bool = False) -> Dict[str, str]:
        headers = {API_KEY_HEADER: self.api_key}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _decode(self, response: requests.Response, action: str) -> Any:
        if not 200 <= response.status_code < 300:
            raise RemoteStoreError(
                f"{action} failed with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as error:
            raise RemoteStoreError(
                f"{action} response is not valid JSON: {response.text[:200]}",
                status_code=response.status_code,
            ) from error
        finally:
            logging.debug("Raw %s API response: %s", action, response.text[:500])

    def _post(self, url: str, payload: Dict[str, Any], action: str) -> Any:
        response = self.session.post(
            url,
            json=payload,
            headers=self._headers(json_body=True),
            timeout=self.timeout,
        )
        return self._decode(response, action)

    def prepare_upload(
        self,
        *,
        file_name: str,
        file_size: int,
        slug: str,
        custom_id: str,
        content_disposition: str,
        acl: str,
        expires_in: int,
    ) -> PreparedUpload:
        payload = {
            "fileName": file_name,
            "fileSize": file_size,
            "slug": slug,
            "customId": custom_id,
            "contentDisposition": content_disposition,
            "acl": acl,
            "expiresIn": expires_in,
        }
        response = self.session.post(
            PREPARE_URL,
            json=payload,
            headers=self._headers(json_body=True),
            timeout=self.timeout,
        )
        try:
            data = response.json()
        except ValueError as error:
            raise RemoteStoreError(
                f"prepareUpload response is not valid JSON: {response.text[:200]}",
                status_code=response.status_code,
            ) from error
        if not isinstance(data, dict):
            raise RemoteStoreError(
                f"Unexpected prepareUpload response: {data!r}",
                status_code=response.status_code,
            )
        error_message = data.get("error")
        if error_message is not None and not isinstance(error_message, str):
            error_message = str(error_message)
        return PreparedUpload(
            upload_url=_first_url(data, ("url",)),
            remote_key=_first_url(data, ("key",)),
            error=error_message,
        )

    def upload_file(
        self, upload_url: str, file_path: Path, *, timeout: float
    ) -> UploadResponse:
        """PUT the archive to a presigned URL within ``timeout`` seconds overall.

        The request runs on a daemon worker so the deadline covers connecting,
        sending the body and reading the response. When it passes, the worker
        is told to stop and ``requests.Timeout`` is raised; the remote side may
        or may not have received the file. Other transport exceptions from the
        worker are re-raised here.
        """
        cancelled = threading.Event()
        outcome: Dict[str, Any] = {}

        def worker() -> None:
            try:
                outcome["response"] = self._put_archive(upload_url, file_path, timeout, cancelled)
            except Exception as error:
                outcome["error"] = error

        thread = threading.Thread(target=worker, name="uploadthing-put", daemon=True)
        thread.start()
        try:
            thread.join(timeout)
        finally:
            if thread.is_alive():
                cancelled.set()

        if thread.is_alive():
            raise requests.Timeout(f"Upload did not finish within {timeout} seconds.")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["response"]

    def _put_archive(
        self,
        upload_url: str,
        file_path: Path,
        timeout: float,
        cancelled: threading.Event,
    ) -> UploadResponse:
        body = MultipartBody(file_path, cancelled)
        chunks: List[bytes] = []
        try:
            response = self.session.put(
                upload_url,
                data=body,
                headers={"Content-Type": body.content_type},
                timeout=(CONNECT_TIMEOUT, timeout),
                allow_redirects=True,
                stream=True,
            )
            try:
                for chunk in response.iter_content(UPLOAD_CHUNK_SIZE):
                    if cancelled.is_set():
                        raise UploadCancelled("Upload deadline passed while reading the response.")
                    chunks.append(chunk)
            finally:
                response.close()
        finally:
            body.close()
        return UploadResponse(status_code=response.status_code, content=b"".join(chunks))

    def poll_upload(self, remote_key: str) -> PollResult:
        response = self.session.get(
            f"{POLL_URL_BASE}/{remote_key}",
            headers=self._headers(),
            timeout=self.timeout,
        )
        data = self._decode(response, "pollUpload")
        if not isinstance(data, dict):
            raise RemoteStoreError(f"Unexpected pollUpload response: {data!r}")
        status = data.get("status")
        return PollResult(
            status=status if isinstance(status, str) else None,
            file_url=_first_url(data.get("fileData"), ("fileUrl", "url", "ufsUrl")),
        )

    def list_files(self) -> List[RemoteFile]:
        # No pagination: the API's default page is large enough for a backup set.
        data = self._post(LIST_FILES_URL, {}, "listFiles")
        files = data.get("files") if isinstance(data, dict) else None
        if not isinstance(files, list):
            raise RemoteStoreError(f"Could not parse remote file list: {data!r}")
        remote_files: List[RemoteFile] = []
        for entry in files:
            if not isinstance(entry, dict):
                continue
            uploaded_at = entry.get("uploadedAt")
            remote_files.append(
                RemoteFile(
                    key=entry.get("key"),
                    name=entry.get("name"),
                    uploaded_at=uploaded_at if isinstance(uploaded_at, (int, float)) else None,
                )
            )
        return remote_files

    def delete_files(self, keys: Sequence[str]) -> DeleteResult:
        data = self._post(DELETE_FILES_URL, {"fileKeys": list(keys)}, "deleteFiles")
        if not isinstance(data, dict):
            return DeleteResult(success=False, deleted_count=0)
        deleted_count = data.get("deletedCount")
        if isinstance(deleted_count, bool) or not isinstance(deleted_count, int):
            deleted_count = 0
        return DeleteResult(success=data.get("success") is True, deleted_count=deleted_count)

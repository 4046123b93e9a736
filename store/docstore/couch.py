"""
CouchDB document store over HTTP.

Implements the DocumentStore protocol against CouchDB's HTTP API with a
long-lived httpx.AsyncClient.

Invariants:
    - The database is created on first use unless skip_setup is set
    - Every non-2xx response becomes StoreError.from_status(status, ...)
    - Transport failures become StoreError with status None
    - Design document ids keep their "_design/" slash unescaped

How to change safely:
    - JSON-encode view parameters (key, startkey, ...) like CouchDB expects
    - Keep the change feed on longpoll so cancellation is prompt
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any
from urllib.parse import quote, unquote

import httpx

from .base import (
    Attachment,
    NotFoundError,
    StoreConfigurationError,
    StoreError,
    compare_revisions,
)
from .handles import ChangeFeed
from .replication import Replication, Sync
from .views import ViewError

logger = logging.getLogger(__name__)

_JSON_PARAMS = ("key", "keys", "startkey", "endkey", "start_key", "end_key")
_LONGPOLL_TIMEOUT_MS = 30000


def _quote_doc_id(doc_id: str) -> str:
    if doc_id.startswith("_design/"):
        return "_design/" + quote(doc_id[len("_design/") :], safe="")
    return quote(doc_id, safe="")


def _encode_params(options: dict[str, Any]) -> dict[str, str]:
    params = {}
    for key, value in options.items():
        if value is None:
            continue
        if key in _JSON_PARAMS:
            params[key] = json.dumps(value)
        elif isinstance(value, bool):
            params[key] = "true" if value else "false"
        else:
            params[key] = str(value)
    return params


def _encode_attachments(doc: dict[str, Any]) -> dict[str, Any]:
    """Make inline attachment bytes JSON-safe."""
    attachments = doc.get("_attachments")
    if not attachments:
        return doc
    encoded = {}
    for name, entry in attachments.items():
        if entry is None:
            continue
        data = entry.get("data")
        if isinstance(data, (bytes, bytearray, memoryview)):
            entry = {**entry, "data": base64.b64encode(bytes(data)).decode("ascii")}
        encoded[name] = entry
    return {**doc, "_attachments": encoded}


def _error_from_response(response: httpx.Response) -> StoreError:
    error = reason = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        reason = body.get("reason")
    return StoreError.from_status(response.status_code, error=error, reason=reason)


class CouchDocumentStore:
    """Document store backed by a CouchDB database.

    Example:
        >>> store = CouchDocumentStore("http://localhost:5984/widgets")
        >>> await store.put({"_id": "w1", "foo": "bar"})
        {'ok': True, 'id': 'w1', 'rev': '1-...'}
        >>> await store.close()
    """

    adapter = "http"

    def __init__(
        self,
        url: str,
        *,
        auth: tuple[str, str] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        skip_setup: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        parsed = httpx.URL(url)
        if parsed.scheme not in ("http", "https"):
            raise StoreConfigurationError(f"Not an http(s) database URL: {url}")
        # Keep the escaped form so names containing "/" survive
        path = parsed.raw_path.decode("ascii").split("?", 1)[0].rstrip("/")
        db_segment = path.rsplit("/", 1)[-1]
        if not db_segment:
            raise StoreConfigurationError(f"Database URL has no database name: {url}")

        self._url = f"{parsed.scheme}://{parsed.netloc.decode('ascii')}{path}"
        self._server_url = self._url[: -len(db_segment)].rstrip("/")
        self._name = unquote(db_segment)
        if auth is None and parsed.username:
            auth = (parsed.username, parsed.password)
        self._auth = auth
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._transport = transport
        self._setup_done = skip_setup
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def url(self) -> str:
        return self._url

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                auth=self._auth,
                headers={"Accept": "application/json", **self._headers},
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {"params": params, "headers": headers}
        if json_body is not None:
            kwargs["json"] = json_body
        if content is not None:
            kwargs["content"] = content
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._http().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise StoreError(
                f"Request to {self._name} failed: {e}",
                error="transport_error",
            ) from e
        except TypeError as e:
            # Body not JSON serializable (e.g. a Python view function)
            raise StoreError(str(e), status=400, error="bad_request") from e
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response

    async def _ensure_database(self) -> None:
        if self._setup_done:
            return
        try:
            await self._send("PUT", self._url)
            logger.info("Created database", extra={"db_name": self._name})
        except StoreError as e:
            # 412 means the database already exists
            if e.status != 412:
                raise
        self._setup_done = True

    async def _request(self, method: str, path: str = "", **kwargs: Any) -> httpx.Response:
        await self._ensure_database()
        url = f"{self._url}/{path}" if path else self._url
        return await self._send(method, url, **kwargs)

    # Documents

    async def get(self, doc_id: str, **options: Any) -> dict[str, Any]:
        response = await self._request("GET", _quote_doc_id(doc_id), params=_encode_params(options))
        return response.json()

    async def put(self, doc: dict[str, Any]) -> dict[str, Any]:
        doc_id = doc.get("_id")
        if not isinstance(doc_id, str) or not doc_id:
            raise StoreError("Document is missing an _id", status=412, error="missing_id")
        response = await self._request("PUT", _quote_doc_id(doc_id), json_body=_encode_attachments(doc))
        return response.json()

    async def post(self, doc: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", json_body=_encode_attachments(doc))
        return response.json()

    async def remove(self, doc_id: str, rev: str | None) -> dict[str, Any]:
        response = await self._request("DELETE", _quote_doc_id(doc_id), params=_encode_params({"rev": rev}))
        return response.json()

    # Attachments

    async def get_attachment(self, doc_id: str, name: str, **options: Any) -> Attachment:
        response = await self._request(
            "GET",
            f"{_quote_doc_id(doc_id)}/{quote(name, safe='')}",
            params=_encode_params(options),
            headers={"Accept": "*/*"},
        )
        content_type = response.headers.get("content-type", "application/octet-stream")
        return Attachment(content_type, response.content)

    async def put_attachment(
        self,
        doc_id: str,
        name: str,
        rev: str | None,
        data: bytes,
        content_type: str,
    ) -> dict[str, Any]:
        response = await self._request(
            "PUT",
            f"{_quote_doc_id(doc_id)}/{quote(name, safe='')}",
            params=_encode_params({"rev": rev}),
            content=bytes(data),
            headers={"Content-Type": content_type or "application/octet-stream"},
        )
        return response.json()

    async def remove_attachment(self, doc_id: str, name: str, rev: str | None) -> dict[str, Any]:
        response = await self._request(
            "DELETE",
            f"{_quote_doc_id(doc_id)}/{quote(name, safe='')}",
            params=_encode_params({"rev": rev}),
        )
        return response.json()

    # Mango

    async def find(self, request: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", "_find", json_body=request)
        return response.json()

    async def create_index(self, index: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", "_index", json_body=index)
        return response.json()

    async def get_indexes(self) -> dict[str, Any]:
        response = await self._request("GET", "_index")
        return response.json()

    # Map/reduce

    async def query(self, view: Any, **options: Any) -> dict[str, Any]:
        if not isinstance(view, str):
            raise ViewError("Temporary views are not supported by CouchDB; save a design document")
        ddoc_name, _, view_name = view.partition("/")
        path = f"_design/{quote(ddoc_name, safe='')}/_view/{quote(view_name or ddoc_name, safe='')}"

        options = dict(options)
        keys = options.pop("keys", None)
        params = _encode_params(options)
        if keys is not None:
            response = await self._request("POST", path, params=params, json_body={"keys": keys})
        else:
            response = await self._request("GET", path, params=params)
        return response.json()

    # Changes and replication

    def changes(self, **options: Any) -> CouchChangeFeed:
        return CouchChangeFeed(self, **options)

    def sync(self, remote: Any, **options: Any) -> Sync:
        return Sync(self, remote, **options)

    def replicate_to(self, remote: Any, **options: Any) -> Replication:
        return Replication(self, remote, **options)

    def replicate_from(self, remote: Any, **options: Any) -> Replication:
        return Replication(remote, self, **options)

    async def write_replica(self, doc: dict[str, Any]) -> bool:
        try:
            current = await self.get(doc["_id"])
        except NotFoundError:
            current = None
        if current is not None and compare_revisions(doc.get("_rev"), current.get("_rev")) <= 0:
            return False
        await self._request(
            "POST",
            "_bulk_docs",
            json_body={"docs": [_encode_attachments(doc)], "new_edits": False},
        )
        return True

    async def list_databases(self) -> list[str]:
        """Names of every database on the server."""
        response = await self._send("GET", f"{self._server_url}/_all_dbs")
        return response.json()

    # Lifecycle

    async def info(self) -> dict[str, Any]:
        response = await self._request("GET")
        info = response.json()
        info["adapter"] = self.adapter
        return info

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def destroy(self) -> None:
        try:
            await self._send("DELETE", self._url)
        except NotFoundError:
            pass
        self._setup_done = False
        await self.close()
        logger.info("Destroyed database", extra={"db_name": self._name})

    def __repr__(self) -> str:
        return f"CouchDocumentStore(url={self._url!r})"


class CouchChangeFeed(ChangeFeed):
    """Change feed polling CouchDB's _changes endpoint (longpoll when live)."""

    def __init__(self, store: CouchDocumentStore, **options: Any) -> None:
        super().__init__(**options)
        self._store = store
        self._start()

    def _params(self, since: Any) -> dict[str, Any]:
        params: dict[str, Any] = {
            "since": since,
            "include_docs": self.include_docs,
            "attachments": self.attachments,
        }
        if self.live:
            params["feed"] = "longpoll"
            params["timeout"] = _LONGPOLL_TIMEOUT_MS
        if self.limit is not None:
            params["limit"] = self.limit
        if self.doc_ids is not None:
            params["filter"] = "_doc_ids"
        elif self.selector is not None:
            params["filter"] = "_selector"
        return _encode_params(params)

    def _body(self) -> dict[str, Any] | None:
        if self.doc_ids is not None:
            return {"doc_ids": sorted(self.doc_ids)}
        if self.selector is not None:
            return {"selector": self.selector}
        return None

    async def _run(self) -> dict[str, Any]:
        since = self.since
        results: list[dict[str, Any]] = []
        emitted = 0
        # Longpoll requests outlive the default client timeout
        timeout = _LONGPOLL_TIMEOUT_MS / 1000 + self._store._timeout

        while True:
            body = self._body()
            response = await self._store._request(
                "POST" if body is not None else "GET",
                "_changes",
                params=self._params(since),
                json_body=body,
                timeout=timeout if self.live else None,
            )
            payload = response.json()
            for change in payload.get("results", []):
                await self.emit("change", change)
                emitted += 1
                self.last_seq = change.get("seq", self.last_seq)
                if not self.live:
                    results.append(change)
                if self.limit is not None and emitted >= self.limit:
                    return {"results": results, "last_seq": self.last_seq}
            since = payload.get("last_seq", since)
            self.last_seq = since

            if not self.live:
                return {"results": results, "last_seq": since}

"""
Versioned-store abstraction for the replication target.

Every call returns an `Ok`/`Err` result instead of raising, so the retry
logic can branch on the outcome. Implementations: GitHub contents API,
S3-compatible bucket (ETag as revision) and an in-memory test double.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from shared.result import Err, Ok, Result

logger = logging.getLogger(__name__)

USER_AGENT = "heritage-sync/0.1"


class VersionedStoreError(Exception):
    """Failure reported by the versioned store.

    `kind` is one of NOT_FOUND, CONFLICT, TRANSIENT or PERMANENT.
    """

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    PERMANENT = "permanent"

    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.kind in (self.TRANSIENT, self.CONFLICT)

    def __str__(self) -> str:
        if self.status:
            return f"{self.message} (HTTP {self.status})"
        return self.message


@dataclass(frozen=True)
class StoredContent:
    content: bytes
    revision: str


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    path: str
    size: int = 0
    type: str = "file"


class VersionedStore(Protocol):
    """Operations the sync and backup components need from the target."""

    def read(self, path: str) -> Result[StoredContent, VersionedStoreError]:
        ...

    def write(
        self,
        path: str,
        content: bytes,
        message: str,
        revision: Optional[str] = None,
    ) -> Result[str, VersionedStoreError]:
        ...

    def delete(
        self, path: str, message: str, revision: str
    ) -> Result[None, VersionedStoreError]:
        ...

    def list_dir(self, path: str) -> Result[list[DirectoryEntry], VersionedStoreError]:
        ...

    def whoami(self) -> Result[str, VersionedStoreError]:
        ...


def _revision_for(content: bytes, counter: int) -> str:
    return hashlib.sha1(content + str(counter).encode("utf-8")).hexdigest()


@dataclass
class InMemoryVersionedStore:
    """Test double. `offline` fails every call; `write_failures` fails the
    next N writes; deletes of paths in `failing_deletes` always fail."""

    files: dict = None
    commits: list = field(default_factory=list)
    offline: bool = False
    write_failures: int = 0
    failing_deletes: set = field(default_factory=set)

    def __post_init__(self):
        if self.files is None:
            self.files = {}
        self._counter = 0

    def _offline_error(self) -> Err:
        return Err(VersionedStoreError(VersionedStoreError.TRANSIENT, "Store offline"))

    def read(self, path: str) -> Result[StoredContent, VersionedStoreError]:
        if self.offline:
            return self._offline_error()
        stored = self.files.get(path)
        if stored is None:
            return Err(VersionedStoreError(VersionedStoreError.NOT_FOUND, f"Not found: {path}", 404))
        content, revision = stored
        return Ok(StoredContent(content=content, revision=revision))

    def write(
        self,
        path: str,
        content: bytes,
        message: str,
        revision: Optional[str] = None,
    ) -> Result[str, VersionedStoreError]:
        if self.offline:
            return self._offline_error()
        if self.write_failures > 0:
            self.write_failures -= 1
            return Err(VersionedStoreError(VersionedStoreError.TRANSIENT, "Injected write failure", 503))
        existing = self.files.get(path)
        current = existing[1] if existing else None
        if current != revision:
            return Err(
                VersionedStoreError(
                    VersionedStoreError.CONFLICT,
                    f"Stale revision for {path}",
                    409,
                )
            )
        self._counter += 1
        new_revision = _revision_for(content, self._counter)
        self.files[path] = (bytes(content), new_revision)
        self.commits.append(("write", path, message))
        return Ok(new_revision)

    def delete(
        self, path: str, message: str, revision: str
    ) -> Result[None, VersionedStoreError]:
        if self.offline:
            return self._offline_error()
        if path in self.failing_deletes:
            return Err(VersionedStoreError(VersionedStoreError.TRANSIENT, f"Injected delete failure: {path}", 503))
        existing = self.files.get(path)
        if existing is None:
            return Err(VersionedStoreError(VersionedStoreError.NOT_FOUND, f"Not found: {path}", 404))
        if existing[1] != revision:
            return Err(VersionedStoreError(VersionedStoreError.CONFLICT, f"Stale revision for {path}", 409))
        del self.files[path]
        self.commits.append(("delete", path, message))
        return Ok(None)

    def list_dir(self, path: str) -> Result[list[DirectoryEntry], VersionedStoreError]:
        if self.offline:
            return self._offline_error()
        prefix = path.rstrip("/") + "/"
        entries = [
            DirectoryEntry(name=key[len(prefix):], path=key, size=len(content))
            for key, (content, _) in self.files.items()
            if key.startswith(prefix) and "/" not in key[len(prefix):]
        ]
        if not entries:
            return Err(VersionedStoreError(VersionedStoreError.NOT_FOUND, f"Not found: {path}", 404))
        return Ok(sorted(entries, key=lambda e: e.name))

    def whoami(self) -> Result[str, VersionedStoreError]:
        if self.offline:
            return self._offline_error()
        return Ok("in-memory")


def _classify_status(status: int) -> str:
    if status == 404:
        return VersionedStoreError.NOT_FOUND
    if status in (409, 412, 422):
        return VersionedStoreError.CONFLICT
    if status == 429 or status >= 500:
        return VersionedStoreError.TRANSIENT
    return VersionedStoreError.PERMANENT


class GitHubVersionedStore:
    """
    Versioned store backed by the GitHub contents API. The blob `sha` is the
    revision token.
    """

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        *,
        branch: Optional[str] = None,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        if not token:
            raise ValueError("GITHUB_TOKEN is required for GitHubVersionedStore")
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": USER_AGENT,
            }
        )

    def _contents_url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}/contents/{path.lstrip('/')}"

    def _request(self, method: str, url: str, **kwargs) -> Result[requests.Response, VersionedStoreError]:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            return Err(VersionedStoreError(VersionedStoreError.TRANSIENT, f"GitHub request failed: {exc}"))
        if response.status_code >= 400:
            kind = _classify_status(response.status_code)
            # GitHub reports exhausted rate limits as 403.
            if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
                kind = VersionedStoreError.TRANSIENT
            try:
                detail = response.json().get("message", response.reason)
            except ValueError:
                detail = response.reason
            return Err(VersionedStoreError(kind, f"GitHub {method} {url}: {detail}", response.status_code))
        return Ok(response)

    def _ref_params(self) -> dict:
        return {"ref": self.branch} if self.branch else {}

    def read(self, path: str) -> Result[StoredContent, VersionedStoreError]:
        result = self._request("GET", self._contents_url(path), params=self._ref_params())
        if result.is_err():
            return result
        data = result.value.json()
        if isinstance(data, list):
            return Err(VersionedStoreError(VersionedStoreError.PERMANENT, f"{path} is a directory"))
        encoded = data.get("content") or ""
        if encoded:
            content = base64.b64decode(encoded)
        elif data.get("download_url"):
            # Files over 1 MB come back without inline content.
            raw = self._request("GET", data["download_url"])
            if raw.is_err():
                return raw
            content = raw.value.content
        else:
            content = b""
        return Ok(StoredContent(content=content, revision=data["sha"]))

    def write(
        self,
        path: str,
        content: bytes,
        message: str,
        revision: Optional[str] = None,
    ) -> Result[str, VersionedStoreError]:
        body = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
        }
        if revision:
            body["sha"] = revision
        if self.branch:
            body["branch"] = self.branch
        result = self._request("PUT", self._contents_url(path), json=body)
        if result.is_err():
            return result
        return Ok(result.value.json()["content"]["sha"])

    def delete(
        self, path: str, message: str, revision: str
    ) -> Result[None, VersionedStoreError]:
        body = {"message": message, "sha": revision}
        if self.branch:
            body["branch"] = self.branch
        result = self._request("DELETE", self._contents_url(path), json=body)
        if result.is_err():
            return result
        return Ok(None)

    def list_dir(self, path: str) -> Result[list[DirectoryEntry], VersionedStoreError]:
        result = self._request("GET", self._contents_url(path), params=self._ref_params())
        if result.is_err():
            return result
        data = result.value.json()
        if not isinstance(data, list):
            return Err(VersionedStoreError(VersionedStoreError.PERMANENT, f"{path} is not a directory"))
        return Ok(
            [
                DirectoryEntry(
                    name=item["name"],
                    path=item.get("path", f"{path}/{item['name']}"),
                    size=item.get("size") or 0,
                    type=item.get("type", "file"),
                )
                for item in data
            ]
        )

    def whoami(self) -> Result[str, VersionedStoreError]:
        result = self._request("GET", f"{self.api_url}/user")
        if result.is_err():
            return result
        return Ok(result.value.json().get("login", ""))


class S3VersionedStore:
    """
    S3-compatible bucket as the versioned target (enable bucket versioning to
    keep history). The object ETag is the revision token and writes are
    conditional on it.
    """

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "",
        endpoint: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        client=None,
    ):
        self.bucket = bucket
        if client is None:
            config = Config(
                s3={"addressing_style": "virtual"},
                signature_version="s3v4",
            )
            client = boto3.client(
                "s3",
                endpoint_url=endpoint or None,
                region_name=region or None,
                aws_access_key_id=access_key_id or None,
                aws_secret_access_key=secret_access_key or None,
                config=config,
            )
        self._client = client

    @staticmethod
    def _to_error(exc: Exception, action: str) -> Err:
        if isinstance(exc, ClientError):
            code = exc.response.get("Error", {}).get("Code", "")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
            if code in ("NoSuchKey", "NotFound"):
                kind = VersionedStoreError.NOT_FOUND
            elif code in ("PreconditionFailed", "ConditionalRequestConflict"):
                kind = VersionedStoreError.CONFLICT
            elif code in ("SlowDown", "RequestTimeout", "ServiceUnavailable"):
                kind = VersionedStoreError.TRANSIENT
            else:
                kind = _classify_status(status) if status else VersionedStoreError.PERMANENT
            return Err(VersionedStoreError(kind, f"S3 {action} failed: {code or exc}", status or None))
        return Err(VersionedStoreError(VersionedStoreError.TRANSIENT, f"S3 {action} failed: {exc}"))

    def read(self, path: str) -> Result[StoredContent, VersionedStoreError]:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
            return Ok(StoredContent(content=response["Body"].read(), revision=response["ETag"]))
        except (ClientError, BotoCoreError) as exc:
            return self._to_error(exc, f"read {path}")

    def write(
        self,
        path: str,
        content: bytes,
        message: str,
        revision: Optional[str] = None,
    ) -> Result[str, VersionedStoreError]:
        params = {
            "Bucket": self.bucket,
            "Key": path,
            "Body": content,
            "ContentType": "application/json",
        }
        if revision:
            params["IfMatch"] = revision
        else:
            params["IfNoneMatch"] = "*"
        try:
            response = self._client.put_object(**params)
        except (ClientError, BotoCoreError) as exc:
            return self._to_error(exc, f"write {path}")
        logger.debug("S3 write %s: %s", path, message)
        return Ok(response["ETag"])

    def delete(
        self, path: str, message: str, revision: str
    ) -> Result[None, VersionedStoreError]:
        try:
            head = self._client.head_object(Bucket=self.bucket, Key=path)
            if head["ETag"] != revision:
                return Err(VersionedStoreError(VersionedStoreError.CONFLICT, f"Stale revision for {path}", 412))
            self._client.delete_object(Bucket=self.bucket, Key=path)
        except (ClientError, BotoCoreError) as exc:
            return self._to_error(exc, f"delete {path}")
        logger.debug("S3 delete %s: %s", path, message)
        return Ok(None)

    def list_dir(self, path: str) -> Result[list[DirectoryEntry], VersionedStoreError]:
        prefix = path.rstrip("/") + "/"
        entries: list[DirectoryEntry] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/"):
                for item in page.get("Contents", []):
                    entries.append(
                        DirectoryEntry(
                            name=item["Key"][len(prefix):],
                            path=item["Key"],
                            size=item.get("Size", 0),
                        )
                    )
                for common in page.get("CommonPrefixes", []):
                    sub = common["Prefix"]
                    entries.append(
                        DirectoryEntry(name=sub[len(prefix):].rstrip("/"), path=sub, type="dir")
                    )
        except (ClientError, BotoCoreError) as exc:
            return self._to_error(exc, f"list {path}")
        return Ok(entries)

    def whoami(self) -> Result[str, VersionedStoreError]:
        try:
            self._client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as exc:
            return self._to_error(exc, "head_bucket")
        return Ok(self.bucket)

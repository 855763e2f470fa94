from __future__ import annotations

import base64
import hashlib
import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from .errors import ConflictError, StoreUnavailable
from .settings import RunnerSettings, load_secret

logger = logging.getLogger(__name__)

_GITHUB_ACCEPT = "application/vnd.github+json"
_GITHUB_API_VERSION = "2022-11-28"


class FileStore(Protocol):
    """Minimal versioned file store contract the pipeline depends on."""

    async def get_sha_or_null(self, owner: str, repo: str, path: str, ref: str) -> str | None: ...

    async def get_text_or_null(self, owner: str, repo: str, path: str, ref: str) -> str | None: ...

    async def create_or_update(
        self,
        owner: str,
        repo: str,
        path: str,
        message: str,
        content: bytes,
        branch: str,
        expected_sha: str | None = None,
    ) -> str: ...

    async def delete_if_exists(self, owner: str, repo: str, path: str, branch: str, message: str = "") -> bool: ...


def git_blob_sha(content: bytes) -> str:
    """Return the git blob SHA-1 for ``content``, the hash GitHub reports for files."""
    header = f"blob {len(content)}\0".encode("utf-8")
    return hashlib.sha1(header + content).hexdigest()


class MemoryStore:
    """In-process store with the same optimistic-concurrency rules as the GitHub backend.

    Used for offline runs (``RUNNER_STORE_BACKEND=memory``) and tests.
    """

    def __init__(self) -> None:
        self._files: dict[tuple[str, str, str, str], tuple[bytes, str]] = {}
        self.commits: list[tuple[str, str]] = []

    @staticmethod
    def _key(owner: str, repo: str, path: str, ref: str) -> tuple[str, str, str, str]:
        return (owner, repo, ref, path.lstrip("/"))

    def seed(self, owner: str, repo: str, branch: str, path: str, text: str) -> str:
        """Place a file directly, bypassing concurrency checks."""
        content = text.encode("utf-8")
        sha = git_blob_sha(content)
        self._files[self._key(owner, repo, path, branch)] = (content, sha)
        return sha

    async def get_sha_or_null(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        entry = self._files.get(self._key(owner, repo, path, ref))
        return entry[1] if entry is not None else None

    async def get_text_or_null(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        entry = self._files.get(self._key(owner, repo, path, ref))
        return entry[0].decode("utf-8") if entry is not None else None

    async def create_or_update(
        self,
        owner: str,
        repo: str,
        path: str,
        message: str,
        content: bytes,
        branch: str,
        expected_sha: str | None = None,
    ) -> str:
        key = self._key(owner, repo, path, branch)
        current = self._files.get(key)
        current_sha = current[1] if current is not None else None
        if current_sha != expected_sha:
            raise ConflictError(path, expected_sha, f"{path} is at {current_sha!r}, not {expected_sha!r}")
        sha = git_blob_sha(content)
        self._files[key] = (content, sha)
        self.commits.append((key[3], message))
        return sha

    async def delete_if_exists(self, owner: str, repo: str, path: str, branch: str, message: str = "") -> bool:
        return self._files.pop(self._key(owner, repo, path, branch), None) is not None


class GitHubStore:
    """File store backed by the GitHub repository contents API."""

    def __init__(
        self,
        *,
        token: str,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(
            base_url=api_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": _GITHUB_ACCEPT,
                "X-GitHub-Api-Version": _GITHUB_API_VERSION,
            },
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _contents_url(owner: str, repo: str, path: str) -> str:
        return f"/repos/{quote(owner)}/{quote(repo)}/contents/{quote(path.lstrip('/'))}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Transport error on %s %s: %s", method, url, exc)
            raise StoreUnavailable(f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, path: str, expected_sha: str | None = None) -> None:
        if response.is_success:
            return
        body = response.text[:500]
        if response.status_code == 409:
            raise ConflictError(path, expected_sha, f"{path}: {body}")
        if response.status_code == 422 and "sha" in body.lower():
            # Creating a file that already exists without a sha.
            raise ConflictError(path, expected_sha, f"{path}: {body}")
        logger.error("HTTP %d from store for %s: %s", response.status_code, path, body)
        raise StoreUnavailable(f"HTTP {response.status_code} for {path}: {body}")

    async def _get_file(self, owner: str, repo: str, path: str, ref: str) -> dict[str, Any] | None:
        response = await self._request("GET", self._contents_url(owner, repo, path), params={"ref": ref})
        if response.status_code == 404:
            return None
        self._raise_for_status(response, path)
        try:
            data = response.json()
        except ValueError as exc:
            raise StoreUnavailable(f"Invalid JSON from store for {path}") from exc
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise StoreUnavailable(f"{path} is not a file")
        return data

    async def get_sha_or_null(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        data = await self._get_file(owner, repo, path, ref)
        return str(data["sha"]) if data is not None else None

    async def get_text_or_null(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        data = await self._get_file(owner, repo, path, ref)
        if data is None:
            return None
        try:
            return base64.b64decode(data.get("content") or "").decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise StoreUnavailable(f"Undecodable content for {path}") from exc

    async def create_or_update(
        self,
        owner: str,
        repo: str,
        path: str,
        message: str,
        content: bytes,
        branch: str,
        expected_sha: str | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": branch,
        }
        if expected_sha is not None:
            body["sha"] = expected_sha
        response = await self._request("PUT", self._contents_url(owner, repo, path), json=body)
        self._raise_for_status(response, path, expected_sha)
        try:
            return str(response.json()["content"]["sha"])
        except (ValueError, KeyError, TypeError) as exc:
            raise StoreUnavailable(f"Unexpected commit response for {path}") from exc

    async def delete_if_exists(self, owner: str, repo: str, path: str, branch: str, message: str = "") -> bool:
        sha = await self.get_sha_or_null(owner, repo, path, branch)
        if sha is None:
            return False
        response = await self._request(
            "DELETE",
            self._contents_url(owner, repo, path),
            json={"message": message or f"Remove {path}", "sha": sha, "branch": branch},
        )
        if response.status_code == 404:
            return False
        self._raise_for_status(response, path, sha)
        return True


def build_store(settings: RunnerSettings) -> FileStore:
    if settings.store_backend == "memory":
        return MemoryStore()
    return GitHubStore(
        token=load_secret("GITHUB_TOKEN", "github store backend"),
        api_url=settings.github_api_url,
        timeout=settings.store_timeout_seconds,
    )

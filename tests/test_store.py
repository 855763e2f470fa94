import asyncio
import base64
import json

import httpx
import pytest

from a10_runner.errors import ConflictError, StoreUnavailable
from a10_runner.settings import RunnerSettings
from a10_runner.store import GitHubStore, MemoryStore, build_store, git_blob_sha


def _github(handler) -> GitHubStore:  # noqa: ANN001
    client = httpx.AsyncClient(base_url="https://api.github.test", transport=httpx.MockTransport(handler))
    return GitHubStore(token="t", client=client)


def test_git_blob_sha_matches_git() -> None:
    # `printf 'hello\n' | git hash-object --stdin`
    assert git_blob_sha(b"hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"


def test_memory_store_optimistic_concurrency() -> None:
    store = MemoryStore()

    async def scenario() -> None:
        sha = await store.create_or_update("o", "r", "a.txt", "create", b"one", "main")
        with pytest.raises(ConflictError):
            await store.create_or_update("o", "r", "a.txt", "blind create", b"two", "main")
        with pytest.raises(ConflictError):
            await store.create_or_update("o", "r", "a.txt", "stale", b"two", "main", expected_sha="deadbeef")
        await store.create_or_update("o", "r", "a.txt", "update", b"two", "main", expected_sha=sha)
        assert await store.get_text_or_null("o", "r", "a.txt", "main") == "two"
        assert await store.get_text_or_null("o", "r", "a.txt", "dev") is None

    asyncio.run(scenario())


def test_github_get_maps_not_found_to_none() -> None:
    store = _github(lambda request: httpx.Response(404, json={"message": "Not Found"}))
    assert asyncio.run(store.get_sha_or_null("o", "r", "missing.txt", "main")) is None
    assert asyncio.run(store.get_text_or_null("o", "r", "missing.txt", "main")) is None


def test_github_get_decodes_content_and_passes_ref() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["ref"] = request.url.params["ref"]
        encoded = base64.b64encode("<h1>hi</h1>".encode()).decode()
        return httpx.Response(200, json={"type": "file", "sha": "abc123", "content": encoded[:4] + "\n" + encoded[4:]})

    store = _github(handler)
    assert asyncio.run(store.get_text_or_null("acme", "site", "docs/index.html", "dev")) == "<h1>hi</h1>"
    assert asyncio.run(store.get_sha_or_null("acme", "site", "docs/index.html", "dev")) == "abc123"
    assert seen == {"path": "/repos/acme/site/contents/docs/index.html", "ref": "dev"}


def test_github_server_error_raises_store_unavailable() -> None:
    store = _github(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(StoreUnavailable):
        asyncio.run(store.get_sha_or_null("o", "r", "a.txt", "main"))


def test_github_transport_error_raises_store_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(StoreUnavailable):
        asyncio.run(_github(handler).get_sha_or_null("o", "r", "a.txt", "main"))


def test_github_put_omits_sha_on_create_and_sends_it_on_update() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        return httpx.Response(201, json={"content": {"sha": f"sha-{len(bodies)}"}})

    store = _github(handler)
    created = asyncio.run(store.create_or_update("o", "r", "a.txt", "add", b"one", "main"))
    updated = asyncio.run(store.create_or_update("o", "r", "a.txt", "edit", b"two", "main", expected_sha="sha-1"))

    assert (created, updated) == ("sha-1", "sha-2")
    assert "sha" not in bodies[0]
    assert bodies[1]["sha"] == "sha-1"
    assert base64.b64decode(bodies[1]["content"]) == b"two"
    assert bodies[1]["branch"] == "main"


@pytest.mark.parametrize(
    "status, text",
    [(409, '{"message": "a.txt does not match abc"}'), (422, '{"message": "\\"sha\\" wasn\'t supplied."}')],
)
def test_github_put_conflicts(status: int, text: str) -> None:
    store = _github(lambda request: httpx.Response(status, text=text))
    with pytest.raises(ConflictError):
        asyncio.run(store.create_or_update("o", "r", "a.txt", "add", b"x", "main", expected_sha="abc"))


def test_github_put_auth_failure_is_unavailable() -> None:
    store = _github(lambda request: httpx.Response(401, json={"message": "Bad credentials"}))
    with pytest.raises(StoreUnavailable):
        asyncio.run(store.create_or_update("o", "r", "a.txt", "add", b"x", "main"))


def test_github_delete_if_exists() -> None:
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        if request.method == "GET":
            if request.url.path.endswith("gone.txt"):
                return httpx.Response(404)
            return httpx.Response(200, json={"type": "file", "sha": "s1", "content": ""})
        assert json.loads(request.content)["sha"] == "s1"
        return httpx.Response(200, json={"commit": {}})

    store = _github(handler)
    assert asyncio.run(store.delete_if_exists("o", "r", "a.txt", "main")) is True
    assert asyncio.run(store.delete_if_exists("o", "r", "gone.txt", "main")) is False
    assert methods == ["GET", "DELETE", "GET"]


def test_build_store_requires_token_for_github(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:  # noqa: ANN001
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    with pytest.raises(RuntimeError, match="GITHUB_TOKEN"):
        build_store(RunnerSettings(store_backend="github").normalized())
    assert isinstance(build_store(RunnerSettings(store_backend="memory").normalized()), MemoryStore)

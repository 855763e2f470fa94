import pytest
from fastapi.testclient import TestClient

from a10_runner.__main__ import load_prd, main
from a10_runner.pipeline import Pipeline
from a10_runner.server import create_app
from a10_runner.settings import RunnerSettings


@pytest.fixture
def client(settings: RunnerSettings, heuristic_pipeline: Pipeline) -> TestClient:
    with TestClient(create_app(settings, heuristic_pipeline), raise_server_exceptions=False) as test_client:
        yield test_client


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_architect_accepts_bare_payload(client: TestClient) -> None:
    response = client.post("/run/architect", json={"owner": "acme", "repo": "site", "prd": "# Docs site"})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["status"] == "proceeded"
    assert body["context"]["runId"].startswith("run-")
    assert body["context"]["maxRetries"] == 2


def test_stage_accepts_wrapped_envelope(client: TestClient) -> None:
    payload = {
        "runId": "run-direct",
        "owner": "acme",
        "repo": "site",
        "testerResult": {"ok": True},
        "qualityResult": {"ok": True},
    }
    response = client.post("/run/gate", json={"payload": payload})

    body = response.json()
    assert response.status_code == 200
    assert body["stage"] == "gate"
    assert body["status"] == "proceeded"
    assert body["data"]["supervisor"]["data"]["summary"].startswith("Run run-direct completed")


def test_unknown_stage_is_404(client: TestClient) -> None:
    response = client.post("/run/deployer", json={})
    assert response.status_code == 404
    assert response.json()["reason"] == "unknown_stage"
    assert "architect" in response.json()["stages"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": b"not json", "headers": {"content-type": "application/json"}},
        {"json": ["a", "list"]},
        {"json": {"payload": {"owner": "acme"}}},
    ],
)
def test_invalid_payloads_are_422(client: TestClient, kwargs: dict) -> None:
    response = client.post("/run/coder", **kwargs)
    assert response.status_code == 422
    assert response.json()["ok"] is False
    assert response.json()["reason"] == "invalid_payload"


def test_diagnostics_endpoint_returns_recent_events(client: TestClient) -> None:
    client.post("/run/architect", json={"owner": "acme", "repo": "site"})

    response = client.get("/diagnostics", params={"limit": 3})

    body = response.json()
    assert body["ok"] is True
    assert body["count"] == 3
    assert len(body["events"]) == 3
    assert {"timestamp", "stage", "severity", "message"} <= set(body["events"][0])


def test_unhandled_error_is_a_json_500(settings: RunnerSettings, heuristic_pipeline: Pipeline) -> None:
    async def explode(stage, raw):  # noqa: ANN001,ANN202
        raise RuntimeError("disk on fire")

    heuristic_pipeline.run_stage = explode
    with TestClient(create_app(settings, heuristic_pipeline), raise_server_exceptions=False) as test_client:
        response = test_client.post("/run/tester", json={"runId": "r", "owner": "acme", "repo": "site"})

    assert response.status_code == 500
    assert response.json() == {"ok": False, "reason": "internal_error", "error": "RuntimeError: disk on fire"}
    assert heuristic_pipeline.diagnostics.recent(1)[0].message == "unhandled exception"


def test_cli_run_with_memory_store(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setenv("RUNNER_GENERATOR_BACKEND", "heuristic")
    monkeypatch.setenv("RUNNER_COMMIT_SETTLE_SECONDS", "0")
    monkeypatch.setenv("RUNNER_COMMIT_BACKOFF_SECONDS", "0")

    exit_code = main(["run", "--owner", "acme", "--repo", "site", "--store", "memory", "--prd-text", "# Blog"])

    assert exit_code == 0
    assert '"status": "proceeded"' in capsys.readouterr().out


def test_load_prd_rejects_conflicting_sources(tmp_path) -> None:  # noqa: ANN001
    with pytest.raises(ValueError):
        load_prd(prd_file=tmp_path / "prd.md", prd_text="inline")
    assert load_prd(prd_file=None, prd_text=None) == ""


def test_max_retries_above_ceiling_is_422(client: TestClient) -> None:
    response = client.post("/run/architect", json={"owner": "acme", "repo": "site", "maxRetries": 11})

    assert response.status_code == 422
    assert response.json()["reason"] == "invalid_payload"
    assert "ceiling" in response.json()["error"]

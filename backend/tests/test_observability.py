from fastapi.testclient import TestClient


def test_request_id_header(client: TestClient):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    header = resp.headers.get("x-request-id")
    assert header


def test_request_id_is_echoed(client: TestClient):
    resp = client.get("/api/health", headers={"X-Request-Id": "req-42"})
    assert resp.headers["x-request-id"] == "req-42"


def test_metrics_endpoint_exposed(client: TestClient):
    client.get("/api/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text
    assert "market_sync_runs_total" in resp.text
    assert "prediction_requests_total" in resp.text


def test_request_counter_labels_route_path(anon_client: TestClient):
    anon_client.post("/api/market-prices/sync")
    resp = anon_client.get("/metrics")
    assert 'path="/api/market-prices/sync"' in resp.text


def test_latency_health_stats(client: TestClient):
    for _ in range(3):
        client.get("/api/health")
    resp = client.get("/api/health/latency")
    assert resp.status_code == 200
    data = resp.json()
    assert "paths" in data and isinstance(data["paths"], list)
    entries = {p["path"]: p for p in data["paths"]}
    assert "/api/health" in entries
    row = entries["/api/health"]
    assert row["p95_ms"] >= row["p50_ms"]
    assert row["sample_size"] >= 1


def test_scrapes_are_not_latency_sampled(client: TestClient):
    client.get("/metrics")
    client.get("/api/health/latency")
    paths = {p["path"] for p in client.get("/api/health/latency").json()["paths"]}
    assert "/metrics" not in paths
    assert "/api/health/latency" not in paths

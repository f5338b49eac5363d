from __future__ import annotations

import threading
import urllib.error
import urllib.request

from ingress_controller.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Readiness requires both synced caches and running workers."""

    def setup_method(self) -> None:
        self.workers = threading.Event()
        self.synced = threading.Event()
        self.server = start_health_server(
            workers=self.workers, port=0, cache_synced=self.synced.is_set
        )
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_before_cache_sync(self) -> None:
        self.workers.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "synced=false workers=true"

    def test_readyz_returns_503_when_workers_not_running(self) -> None:
        self.synced.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "synced=true workers=false"

    def test_readyz_returns_200_when_synced_and_running(self) -> None:
        self.synced.set()
        self.workers.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "synced=true workers=true"

    def test_readyz_returns_503_after_workers_stop(self) -> None:
        self.synced.set()
        self.workers.set()
        assert _get(f"{self.base_url}/readyz")[0] == 200

        self.workers.clear()
        assert _get(f"{self.base_url}/readyz")[0] == 503

    def test_metrics_exposes_controller_metrics(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "ingress_manager_reconciles_total" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404


def test_readiness_defaults_to_workers_only() -> None:
    workers = threading.Event()
    server = start_health_server(workers=workers, port=0)
    try:
        base_url = f"http://127.0.0.1:{server.server_address[1]}"
        workers.set()
        status, body = _get(f"{base_url}/readyz")
    finally:
        server.shutdown()

    assert status == 200
    assert body == "synced=true workers=true"

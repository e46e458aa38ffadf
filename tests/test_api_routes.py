from fastapi.testclient import TestClient

from analytics_engine.main import create_app
from analytics_engine.schemas import DashboardDefinition
from analytics_engine.security import mint_service_token
from analytics_engine.settings import Settings, get_settings
from tests.fakes import FakeDataExecutor, FakeDefinitionStore, build_test_services, chart

Q1 = {"start_date": "2024-01-01", "end_date": "2024-03-31"}


def _client(executor: FakeDataExecutor | None = None) -> TestClient:
    store = FakeDefinitionStore(
        charts=[chart("charges-line", "line"), chart("charges-bar", "bar")],
        dashboards=[DashboardDefinition(dashboard_id="finance", chart_ids=["charges-line", "charges-bar", "ghost"])],
    )
    services = build_test_services(executor=executor, store=store)
    return TestClient(create_app(Settings(environment="test"), services))


def _auth_headers(*, partition_ids: list[int] | None = None, unrestricted: bool = False) -> dict[str, str]:
    token = mint_service_token(
        secret=get_settings().engine_service_secret,
        subject="tests",
        partition_ids=[100, 200] if partition_ids is None else partition_ids,
        unrestricted=unrestricted,
    )
    return {"Authorization": f"Bearer {token}"}


def test_health() -> None:
    with _client() as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "analytics-engine"}


def test_render_chart_by_id() -> None:
    with _client() as client:
        response = client.post("/charts/render", json={"chart_id": "charges-line", "filters": Q1}, headers=_auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["chart_id"] == "charges-line"
    assert body["data"]["labels"] == ["2024-01-01", "2024-02-01", "2024-03-01"]
    assert body["data"]["datasets"][0]["data"] == [150, 200, 90]
    assert body["metadata"]["cache_hit"] is False


def test_render_inline_definition() -> None:
    definition = chart("adhoc", "number").model_dump(mode="json")

    with _client() as client:
        response = client.post("/charts/render", json={"definition": definition, "filters": Q1}, headers=_auth_headers())

    assert response.status_code == 200
    assert response.json()["data"]["value"] == 440


def test_render_chart_requires_service_token() -> None:
    with _client() as client:
        response = client.post("/charts/render", json={"chart_id": "charges-line"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "missing_service_token"


def test_render_chart_rejects_ambiguous_request() -> None:
    definition = chart("adhoc", "number").model_dump(mode="json")

    with _client() as client:
        response = client.post(
            "/charts/render",
            json={"chart_id": "charges-line", "definition": definition},
            headers=_auth_headers(),
        )

    assert response.status_code == 422


def test_unknown_chart_returns_not_found() -> None:
    with _client() as client:
        response = client.post("/charts/render", json={"chart_id": "ghost"}, headers=_auth_headers())

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_fetch_failure_is_sanitized() -> None:
    with _client(FakeDataExecutor(fail_when=lambda _statement: True)) as client:
        response = client.post("/charts/render", json={"chart_id": "charges-line", "filters": Q1}, headers=_auth_headers())

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "fetch_failed"
    assert error["message"] == "Failed to load chart data"
    assert "secret" not in response.text


def test_expand_chart_by_dimension() -> None:
    with _client() as client:
        response = client.post(
            "/charts/charges-line/expand",
            json={"dimension_column": "location", "base_filters": Q1, "limit": 10},
            headers=_auth_headers(),
        )

    assert response.status_code == 200
    body = response.json()
    assert [item["dimension_value"]["value"] for item in body["charts"]] == ["North", "South"]
    assert body["dimension"]["column_name"] == "location"


def test_expand_chart_by_selected_values() -> None:
    with _client() as client:
        response = client.post(
            "/charts/charges-line/expand",
            json={"dimension_column": "location", "base_filters": Q1, "selected_values": ["South"]},
            headers=_auth_headers(),
        )

    assert response.status_code == 200
    assert [item["dimension_value"]["value"] for item in response.json()["charts"]] == ["South"]


def test_expand_chart_combinations_pages_results() -> None:
    with _client() as client:
        response = client.post(
            "/charts/charges-line/expand/combinations",
            json={"dimension_columns": ["location"], "base_filters": Q1, "limit": 1},
            headers=_auth_headers(),
        )

    assert response.status_code == 200
    body = response.json()
    assert [item["dimension_value"]["values"] for item in body["charts"]] == [{"location": "North"}]
    assert body["metadata"]["total_combinations"] == 2
    assert body["metadata"]["has_more"] is True


def test_expand_chart_combinations_requires_a_dimension() -> None:
    with _client() as client:
        response = client.post(
            "/charts/charges-line/expand/combinations",
            json={"dimension_columns": [], "selections": []},
            headers=_auth_headers(),
        )

    assert response.status_code == 422


def test_expand_rejects_unknown_dimension() -> None:
    with _client() as client:
        response = client.post(
            "/charts/charges-line/expand",
            json={"dimension_column": "practice_uid"},
            headers=_auth_headers(),
        )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "unknown_column"


def test_list_chart_dimensions() -> None:
    with _client() as client:
        response = client.get("/charts/charges-line/dimensions", headers=_auth_headers())

    assert response.status_code == 200
    assert [item["column_name"] for item in response.json()] == ["location"]


def test_render_dashboard() -> None:
    with _client() as client:
        response = client.post(
            "/dashboards/finance/render",
            json={"universal_filters": Q1},
            headers=_auth_headers(),
        )

    assert response.status_code == 200
    body = response.json()
    assert [item["chart_id"] for item in body["results"]] == ["charges-line", "charges-bar", "ghost"]
    assert body["results"][2]["error"]["code"] == "not_found"
    assert body["metadata"]["charts_rendered"] == 2
    assert body["metadata"]["unique_fetches"] == 1


def test_cache_invalidation_requires_unrestricted_scope() -> None:
    with _client() as client:
        forbidden = client.post("/internal/cache/invalidate", json={"data_source_id": 1}, headers=_auth_headers())
        empty = client.post("/internal/cache/invalidate", json={}, headers=_auth_headers(unrestricted=True))

    assert forbidden.status_code == 403
    assert empty.status_code == 400


def test_cache_invalidation_drops_cached_results() -> None:
    executor = FakeDataExecutor()
    with _client(executor) as client:
        payload = {"chart_id": "charges-line", "filters": Q1}
        client.post("/charts/render", json=payload, headers=_auth_headers())
        cached = client.post("/charts/render", json=payload, headers=_auth_headers())
        invalidated = client.post(
            "/internal/cache/invalidate",
            json={"data_source_id": 1},
            headers=_auth_headers(unrestricted=True),
        )
        refreshed = client.post("/charts/render", json=payload, headers=_auth_headers())

    assert cached.json()["metadata"]["cache_hit"] is True
    assert invalidated.status_code == 200
    assert invalidated.json() == {"removed": 1}
    assert refreshed.json()["metadata"]["cache_hit"] is False
    assert executor.calls == 2

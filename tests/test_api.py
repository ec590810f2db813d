# tests/test_api.py
from fastapi.testclient import TestClient

from attackmap import AddressResolver, DecoyListener, GeoLocator, QueryService, create_app
from conftest import make_event


def test_logs_endpoint_returns_ordered_payload(store):
  events = [make_event(i) for i in range(3)]
  for ev in events:
    store.append(ev)

  client = TestClient(create_app(QueryService(store)))
  resp = client.get("/api/logs")
  assert resp.status_code == 200
  body = resp.json()
  assert [item["sourceAddress"] for item in body] == [ev.source_address for ev in events]
  assert set(body[0]) == {"sourceAddress", "latitude", "longitude", "city", "country", "capturedAt"}
  assert body[1]["capturedAt"] == events[1].captured_at
  assert body[2]["latitude"] == events[2].latitude


def test_logs_endpoint_empty(store):
  client = TestClient(create_app(QueryService(store)))
  assert client.get("/api/logs").json() == []


def test_logs_endpoint_allows_cross_origin(store):
  client = TestClient(create_app(QueryService(store)))
  resp = client.get("/api/logs", headers={"Origin": "http://map.example"})
  assert resp.headers.get("access-control-allow-origin") == "*"


def test_status_endpoint(store):
  store.append(make_event(1))
  listener = DecoyListener({}, AddressResolver(), GeoLocator(), store)
  client = TestClient(create_app(QueryService(store), listener))
  body = client.get("/api/status").json()
  assert body["retained"] == 1
  assert body["max_retained"] == 100
  assert body["total_connections"] == 0
  assert body["decoy_port"] is None


def test_static_directory_is_served_alongside_api(store, tmp_path):
  public = tmp_path / "public"
  public.mkdir()
  (public / "index.html").write_text("<html>map</html>", encoding="utf-8")

  client = TestClient(create_app(QueryService(store), static_dir=str(public)))
  assert "map" in client.get("/").text
  assert client.get("/api/logs").json() == []


def test_query_service_has_no_mutators(store):
  query = QueryService(store)
  assert not hasattr(query, "append")
  store.append(make_event(5))
  assert query.current_log() == store.snapshot()

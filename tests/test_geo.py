# tests/test_geo.py
import requests

from attackmap import GeoLocator, GeoResult


class FakeResponse:
  def __init__(self, status_code=200, payload=None, bad_json=False):
    self.status_code = status_code
    self._payload = payload
    self._bad_json = bad_json

  @property
  def ok(self):
    return 200 <= self.status_code < 400

  def json(self):
    if self._bad_json:
      raise ValueError("Expecting value")
    return self._payload


class FakeHttp:
  def __init__(self, response=None, exc=None):
    self.response = response
    self.exc = exc
    self.calls = []

  def get(self, url, timeout=None):
    self.calls.append((url, timeout))
    if self.exc is not None:
      raise self.exc
    return self.response


def _locator(http):
  return GeoLocator(url_template="http://geo.test/json/{ip}", timeout=1.5, http=http)


def test_successful_lookup():
  http = FakeHttp(FakeResponse(payload={
    "status": "success", "lat": 37.4, "lon": -122.1, "city": "Mountain View", "country": "US",
  }))
  result = _locator(http).lookup("8.8.8.8")
  assert result == GeoResult(latitude=37.4, longitude=-122.1, city="Mountain View", country="US")
  assert http.calls == [("http://geo.test/json/8.8.8.8", 1.5)]


def test_missing_city_and_country_become_empty_strings():
  http = FakeHttp(FakeResponse(payload={"status": "success", "lat": 1, "lon": 2, "city": None}))
  result = _locator(http).lookup("1.1.1.1")
  assert result is not None
  assert result.city == ""
  assert result.country == ""


def test_provider_failure_status():
  http = FakeHttp(FakeResponse(payload={"status": "fail", "message": "reserved range"}))
  assert _locator(http).lookup("203.0.113.5") is None


def test_http_error_status():
  http = FakeHttp(FakeResponse(status_code=429, payload={"status": "success", "lat": 1, "lon": 1}))
  assert _locator(http).lookup("8.8.8.8") is None


def test_malformed_body():
  assert _locator(FakeHttp(FakeResponse(bad_json=True))).lookup("8.8.8.8") is None
  assert _locator(FakeHttp(FakeResponse(payload=["success"]))).lookup("8.8.8.8") is None
  assert _locator(FakeHttp(FakeResponse(payload={"status": "success", "lat": "x", "lon": 2}))).lookup("8.8.8.8") is None
  assert _locator(FakeHttp(FakeResponse(payload={"status": "success"}))).lookup("8.8.8.8") is None


def test_network_errors_and_timeouts():
  assert _locator(FakeHttp(exc=requests.Timeout("slow"))).lookup("8.8.8.8") is None
  assert _locator(FakeHttp(exc=requests.ConnectionError("down"))).lookup("8.8.8.8") is None


def test_one_request_per_call_no_retry():
  http = FakeHttp(exc=requests.Timeout("slow"))
  locator = _locator(http)
  locator.lookup("8.8.8.8")
  locator.lookup("8.8.8.8")
  assert len(http.calls) == 2

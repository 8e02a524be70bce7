import datetime
import json
from unittest import mock

import pytest
import requests

from ksef import ksefError
from ksef.ksefClient import KSEF_URLS, ksefClient


def response(status=200, json_body=None, text=None, content_type="application/json", content=None):
    resp = mock.Mock(spec=requests.Response)
    resp.status_code = status
    resp.headers = {"Content-Type": content_type}
    if json_body is not None:
        text = json.dumps(json_body)
        resp.json.return_value = json_body
    else:
        resp.json.side_effect = ValueError("not json")
    resp.text = text or ""
    resp.content = content if content is not None else resp.text.encode("utf-8")
    return resp


@pytest.fixture()
def http():
    return mock.create_autospec(requests.Session, instance=True)


@pytest.fixture()
def client(http):
    return ksefClient(environment="test", session=http)


def test_environment_urls():
    assert ksefClient(environment="prod").base_url == KSEF_URLS["prod"]
    assert ksefClient(base_url="https://example.test/v2/").base_url == "https://example.test/v2"
    with pytest.raises(ValueError):
        ksefClient(environment="staging")


def test_from_config():
    client = ksefClient.from_config({"environment": "demo", "timeout": 10})
    assert client.base_url == KSEF_URLS["demo"]
    assert client.timeout == 10


def test_bearer_header(client, http):
    http.request.return_value = response(json_body={"ok": True})
    client.access_token = "access-jwt"

    assert client.get_public_key_certificates() == {"ok": True}

    method, url = http.request.call_args.args
    assert (method, url) == ("GET", KSEF_URLS["test"] + "/security/public-key-certificates")
    assert http.request.call_args.kwargs["headers"]["Authorization"] == "Bearer access-jwt"
    assert http.request.call_args.kwargs["timeout"] == 30


def test_explicit_bearer_overrides_access_token(client, http):
    http.request.return_value = response(json_body={"status": {"code": 200}})
    client.access_token = "access-jwt"

    client.get_auth_status("20251010-AU-1/2", "temporary-jwt")

    method, url = http.request.call_args.args
    assert url.endswith("/auth/20251010-AU-1%2F2")
    assert http.request.call_args.kwargs["headers"]["Authorization"] == "Bearer temporary-jwt"


def test_submit_ksef_token_body(client, http):
    http.request.return_value = response(json_body={"referenceNumber": "R"})

    client.submit_ksef_token("challenge", "5265877635", "ZW5j")

    assert http.request.call_args.kwargs["json"] == {
        "challenge": "challenge",
        "contextIdentifier": {"type": "Nip", "value": "5265877635"},
        "encryptedToken": "ZW5j",
    }


def test_query_metadata(client, http):
    http.request.return_value = response(json_body={"invoices": []})
    date_to = datetime.datetime(2025, 10, 31, tzinfo=datetime.timezone.utc)
    date_from = date_to - datetime.timedelta(days=30)

    client.query_metadata("Subject2", date_from, date_to, page_size=20, page_offset=2)

    kwargs = http.request.call_args.kwargs
    assert http.request.call_args.args == ("POST", KSEF_URLS["test"] + "/invoices/query/metadata")
    assert kwargs["params"] == {"pageSize": 20, "pageOffset": 2, "sortOrder": "Asc"}
    assert kwargs["json"]["subjectType"] == "Subject2"
    assert kwargs["json"]["dateRange"] == {
        "dateType": "PermanentStorage",
        "from": "2025-10-01T00:00:00+00:00",
        "to": "2025-10-31T00:00:00+00:00",
    }


def test_get_invoice_returns_bytes(client, http):
    http.request.return_value = response(text="<?xml?>", content_type="application/xml", content=b"<?xml?>")

    assert client.get_invoice("K/1") == (b"<?xml?>", "application/xml")
    assert http.request.call_args.args[1].endswith("/invoices/ksef/K%2F1")


def test_empty_and_non_json_bodies(client, http):
    http.request.return_value = response(text="")
    assert client.redeem_token("t") == {}

    http.request.return_value = response(text="<html/>", content_type="text/html")
    assert client.terminate_session() == {"raw_content": "<html/>"}


def test_unauthorized(client, http):
    http.request.return_value = response(401, json_body={"message": "Token expired"})

    with pytest.raises(ksefError.Unauthorized) as excinfo:
        client.query_metadata("Subject1", datetime.datetime.now(), datetime.datetime.now())

    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "Token expired"


def test_exception_description(client, http):
    body = {"exception": {"exceptionDetailList": [{"exceptionCode": 21405, "exceptionDescription": "Błąd walidacji"}]}}
    http.request.return_value = response(400, json_body=body)

    with pytest.raises(ksefError.ksefError) as excinfo:
        client.get_challenge()

    assert type(excinfo.value) is ksefError.ksefError
    assert excinfo.value.message == "Błąd walidacji"
    assert excinfo.value.response_data == body


def test_non_json_error(client, http):
    http.request.return_value = response(502, text="Bad gateway", content_type="text/html")

    with pytest.raises(ksefError.ksefError) as excinfo:
        client.get_challenge()

    assert excinfo.value.status_code == 502
    assert excinfo.value.response_data["raw"] == "Bad gateway"


def test_transport_error(client, http):
    http.request.side_effect = requests.ConnectionError("refused")

    with pytest.raises(ksefError.RemoteUnavailable):
        client.get_challenge()

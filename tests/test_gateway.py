import datetime
import json
from unittest import mock

import pytest

from ksef import ksefError
from ksef.ksefCache import InvoiceRecord, utcnow
from ksef.ksefClient import ksefClient
from ksef.ksefGateway import ksefGateway
from ksef.ksefSession import ksefSession

from test_cache import summary
from test_pdf import INVOICE_XML


def metadata(ksef_number, **extra):
    item = {
        "ksefNumber": ksef_number,
        "invoiceNumber": f"FV/{ksef_number}",
        "issueDate": "2025-10-01",
        "invoicingDate": "2025-10-02T10:00:00+00:00",
        "seller": {"nip": "1111111111", "name": "Dostawca Sp. z o.o."},
        "buyer": {"identifier": {"type": "Nip", "value": "2222222222"}, "name": "Odbiorca S.A."},
        "netAmount": 100.0,
        "grossAmount": 123.0,
        "currency": "PLN",
    }
    item.update(extra)
    return item


@pytest.fixture()
def client():
    fake = mock.create_autospec(ksefClient, instance=True)
    fake.query_metadata.return_value = {
        "hasMore": False,
        "invoices": [metadata("K-1"), metadata("K-2"), metadata("K-3")],
    }
    fake.get_invoice.return_value = (INVOICE_XML.encode("utf-8"), "application/xml")
    return fake


@pytest.fixture()
def session():
    fake = mock.create_autospec(ksefSession, instance=True)
    fake.is_valid.return_value = True
    return fake


@pytest.fixture()
def gateway(client, session, cache):
    return ksefGateway(client, session, cache)


def cache_entries(cache, numbers, age, direction="received"):
    cached_at = utcnow() - age
    for number in numbers:
        cache.upsert(InvoiceRecord.from_summary(summary(number, direction=direction), cached_at=cached_at))


def test_fresh_cache_skips_network(gateway, client, session, cache):
    cache_entries(cache, ["C-1", "C-2"], datetime.timedelta(minutes=1))

    invoices = gateway.list_invoices("received")

    assert sorted(inv["id"] for inv in invoices) == ["C-1", "C-2"]
    client.query_metadata.assert_not_called()
    session.authenticate.assert_not_called()


def test_stale_cache_fetches_remote(gateway, client, cache):
    cache_entries(cache, ["C-1"], datetime.timedelta(minutes=10))

    invoices = gateway.list_invoices("received", limit=50, offset=0)

    assert [inv["id"] for inv in invoices] == ["K-1", "K-2", "K-3"]
    assert cache.count("received") == 4
    subject_type, date_from, date_to = client.query_metadata.call_args.args
    assert subject_type == "Subject2"
    assert date_to - date_from == datetime.timedelta(days=30)
    assert client.query_metadata.call_args.kwargs == {"page_size": 50, "page_offset": 0}


def test_sent_uses_subject1(gateway, client):
    gateway.list_invoices("sent")
    assert client.query_metadata.call_args.args[0] == "Subject1"


def test_metadata_mapping(gateway, client):
    client.query_metadata.return_value = {
        "invoices": [
            metadata("K-1"),
            {"ksefReferenceNumber": "R-9", "grossAmount": 10.0, "issueDate": "2025-10-05", "currency": None},
        ]
    }

    first, second = gateway.list_invoices("received")

    assert first["amount"] == first["grossAmount"] == 123.0
    assert first["dueDate"] == "2025-10-02T10:00:00+00:00"
    assert first["seller"] == {"name": "Dostawca Sp. z o.o.", "taxId": "1111111111"}
    assert first["buyer"] == {"name": "Odbiorca S.A.", "taxId": "2222222222"}
    assert first["type"] == first["status"] == "received"

    assert second["id"] == second["ksefNumber"] == "R-9"
    assert second["dueDate"] == "2025-10-05"
    assert second["currency"] == "PLN"
    assert second["seller"]["name"] == "Unknown"
    assert second["buyer"]["name"] == "Unknown"


def test_remote_order_preserved(gateway, client):
    client.query_metadata.return_value = {"invoices": [metadata("K-9"), metadata("K-1"), metadata("K-5")]}
    assert [inv["id"] for inv in gateway.list_invoices("received")] == ["K-9", "K-1", "K-5"]


def test_unauthorized_invalidates_and_returns_cache(gateway, client, session, cache):
    cache_entries(cache, ["C-1", "C-2"], datetime.timedelta(hours=1))
    client.query_metadata.side_effect = ksefError.Unauthorized("Token expired", status_code=401)

    invoices = gateway.list_invoices("received")

    assert sorted(inv["id"] for inv in invoices) == ["C-1", "C-2"]
    session.invalidate.assert_called_once()
    assert isinstance(gateway.last_error, ksefError.Unauthorized)


def test_remote_error_with_empty_cache(gateway, client, session):
    client.query_metadata.side_effect = ksefError.RemoteUnavailable("Connection refused")

    assert gateway.list_invoices("received") == []
    session.invalidate.assert_not_called()
    assert isinstance(gateway.last_error, ksefError.RemoteUnavailable)


def test_malformed_response_returns_cache(gateway, client, cache):
    cache_entries(cache, ["C-1"], datetime.timedelta(hours=1))
    client.query_metadata.return_value = {"raw_content": "<html>maintenance</html>"}

    assert [inv["id"] for inv in gateway.list_invoices("received")] == ["C-1"]
    assert gateway.last_error is not None


def test_authentication_failure_returns_stale_cache(gateway, client, session, cache):
    cache_entries(cache, ["C-1"], datetime.timedelta(hours=1))
    session.is_valid.return_value = False
    session.authenticate.side_effect = ksefError.ChallengeUnavailable("No challenge")

    assert [inv["id"] for inv in gateway.list_invoices("received")] == ["C-1"]
    client.query_metadata.assert_not_called()
    assert isinstance(gateway.last_error, ksefError.ChallengeUnavailable)


def test_authenticates_when_session_invalid(gateway, client, session):
    session.is_valid.return_value = False

    assert len(gateway.list_invoices("received")) == 3
    session.authenticate.assert_called_once_with()


def test_cache_failure_does_not_stop_batch(gateway, client, cache):
    real_upsert = cache.upsert

    def flaky(record):
        if record.id == "K-2":
            raise ValueError("disk full")
        return real_upsert(record)

    with mock.patch.object(cache, "upsert", side_effect=flaky):
        invoices = gateway.list_invoices("received")

    assert len(invoices) == 3
    assert cache.get("K-1") is not None
    assert cache.get("K-2") is None
    assert cache.get("K-3") is not None


def test_invoice_without_number_is_not_cached(gateway, client, cache):
    client.query_metadata.return_value = {"invoices": [{"invoiceNumber": "FV/none"}]}

    invoices = gateway.list_invoices("received")

    assert len(invoices) == 1
    assert cache.count() == 0


def test_unknown_direction(gateway):
    with pytest.raises(ValueError):
        gateway.list_invoices("incoming")


def test_get_invoice_details(gateway, client):
    assert gateway.get_invoice_details("K-1") == INVOICE_XML
    client.get_invoice.assert_called_once_with("K-1")


def test_get_invoice_details_unauthorized(gateway, client, session):
    client.get_invoice.side_effect = ksefError.Unauthorized("expired", status_code=401)

    assert gateway.get_invoice_details("K-1") is None
    session.invalidate.assert_called_once()


def test_get_invoice_details_empty_body(gateway, client):
    client.get_invoice.return_value = (b"", "application/xml")
    assert gateway.get_invoice_details("K-1") is None
    assert isinstance(gateway.last_error, ksefError.PayloadUnrecognized)


def test_get_invoice_details_without_session(gateway, client, session):
    session.is_valid.return_value = False
    session.authenticate.side_effect = ksefError.AuthStatusFailed("denied")

    assert gateway.get_invoice_details("K-1") is None
    client.get_invoice.assert_not_called()


def test_download_invoice_xml(gateway, client):
    assert gateway.download_invoice_xml("K-1") == INVOICE_XML.encode("utf-8")

    client.get_invoice.return_value = (json.dumps({"ksefNumber": "K-1"}).encode(), "application/json")
    assert json.loads(gateway.download_invoice_xml("K-1")) == {"ksefNumber": "K-1"}


def test_download_invoice_pdf(gateway):
    pdf = gateway.download_invoice_pdf("K-1")
    assert pdf.startswith(b"%PDF-")


def test_download_invoice_pdf_from_unrenderable_payload(gateway, client):
    client.get_invoice.return_value = (b"\xff\xfe\x00", "application/octet-stream")
    assert gateway.download_invoice_pdf("K-1") is None

    client.get_invoice.return_value = (b"plain text", "text/plain")
    assert gateway.download_invoice_pdf("K-1") is None


def test_test_connection(gateway, session):
    assert gateway.test_connection()
    session.authenticate.assert_called_once_with(None)

    session.authenticate.side_effect = ksefError.AuthSubmitRejected("bad token")
    assert not gateway.test_connection()
    assert isinstance(gateway.last_error, ksefError.AuthSubmitRejected)

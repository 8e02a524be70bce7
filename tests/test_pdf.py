import pytest

from ksef import ksefError
from ksef.ksefPDFGenerator import (
    find_all_by_local_name,
    find_by_local_name,
    format_amount,
    ksefPDFGenerator,
    text_of,
    xml_to_tree,
)

INVOICE_XML = """<?xml version="1.0" encoding="UTF-8"?>
<Faktura xmlns="http://crd.gov.pl/wzor/2025/06/25/13775/">
  <Naglowek>
    <KodFormularza kodSystemowy="FA (3)" wersjaSchemy="1-0E">FA</KodFormularza>
    <WariantFormularza>3</WariantFormularza>
  </Naglowek>
  <Podmiot1>
    <DaneIdentyfikacyjne>
      <NIP>1111111111</NIP>
      <Nazwa>Dostawca Sp. z o.o. &amp; Wspólnicy</Nazwa>
    </DaneIdentyfikacyjne>
    <Adres>
      <KodKraju>PL</KodKraju>
      <AdresL1>ul. Żółta 1</AdresL1>
      <AdresL2>00-001 Warszawa</AdresL2>
    </Adres>
  </Podmiot1>
  <Podmiot2>
    <DaneIdentyfikacyjne>
      <NIP>2222222222</NIP>
      <Nazwa>Odbiorca S.A.</Nazwa>
    </DaneIdentyfikacyjne>
  </Podmiot2>
  <Fa>
    <KodWaluty>PLN</KodWaluty>
    <P_1>2025-10-01</P_1>
    <P_2>FV/10/2025</P_2>
    <P_13_1>100.00</P_13_1>
    <P_14_1>23.00</P_14_1>
    <P_15>123.00</P_15>
    <FaWiersz>
      <NrWierszaFa>1</NrWierszaFa>
      <P_7>Usługa serwisowa</P_7>
      <P_8A>godz.</P_8A>
      <P_8B>2</P_8B>
      <P_9A>30.00</P_9A>
      <P_11>60.00</P_11>
      <P_12>23</P_12>
    </FaWiersz>
    <FaWiersz>
      <NrWierszaFa>2</NrWierszaFa>
      <P_7>Części &lt;zamienne&gt;</P_7>
      <P_8B>1</P_8B>
      <P_9A>40.00</P_9A>
      <P_11>40.00</P_11>
      <P_12>23</P_12>
    </FaWiersz>
    <Platnosc>
      <TerminPlatnosci><Termin>2025-10-15</Termin></TerminPlatnosci>
      <FormaPlatnosci>6</FormaPlatnosci>
      <RachunekBankowy><NrRB>PL61109010140000071219812874</NrRB></RachunekBankowy>
    </Platnosc>
  </Fa>
  <Stopka>
    <Informacje><StopkaFaktury>Dziękujemy za współpracę</StopkaFaktury></Informacje>
    <Rejestry><KRS>0000123456</KRS></Rejestry>
  </Stopka>
</Faktura>
"""


@pytest.fixture(scope="module")
def generator():
    return ksefPDFGenerator()


def test_xml_to_tree():
    tree = xml_to_tree(INVOICE_XML)

    faktura = tree["Faktura"]
    assert faktura["Fa"]["P_2"] == "FV/10/2025"
    assert isinstance(faktura["Fa"]["FaWiersz"], list)
    assert faktura["Naglowek"]["KodFormularza"] == "FA"


def test_find_by_local_name_is_tolerant():
    node = {"tns:Fa": {"P_2": "FV/1"}, "{http://example}Stopka": "x"}

    assert find_by_local_name(node, "fa") == {"P_2": "FV/1"}
    assert find_by_local_name(node, "Stopka") == "x"
    assert find_by_local_name(node, "Missing") is None
    assert find_by_local_name(None, "Fa") is None
    assert find_by_local_name([node], "Fa") == {"P_2": "FV/1"}


def test_find_all_by_local_name():
    node = {"FaWiersz": [{"P_7": "a"}, {"P_7": "b"}], "Platnosc": {"x": "1"}}

    assert [text_of(row, "P_7") for row in find_all_by_local_name(node, "fawiersz")] == ["a", "b"]
    assert find_all_by_local_name(node, "Platnosc") == [{"x": "1"}]
    assert find_all_by_local_name(node, "Missing") == []


def test_text_of():
    tree = xml_to_tree(INVOICE_XML)["Faktura"]

    assert text_of(tree, "Podmiot1", "DaneIdentyfikacyjne", "NIP") == "1111111111"
    assert text_of(tree, "Podmiot2", "Adres", "AdresL1", default="N/A") == "N/A"
    assert text_of(tree, "Fa", default="-") == "-"


def test_extract_data(generator):
    data = generator.extract_data(INVOICE_XML, ksef_number="1111111111-20251001-ABCDEF-12")

    assert data["ksef_number"] == "1111111111-20251001-ABCDEF-12"
    assert data["invoice_number"] == "FV/10/2025"
    assert data["seller"]["name"] == "Dostawca Sp. z o.o. & Wspólnicy"
    assert data["buyer"]["nip"] == "2222222222"
    assert data["gross"] == 123.0
    assert data["rates"] == [{"label": "23%", "net": 100.0, "vat": 23.0}]
    assert [item["name"] for item in data["items"]] == ["Usługa serwisowa", "Części <zamienne>"]
    assert data["items"][0]["rate"] == "23%"
    assert data["payment"]["form"] == "przelew"
    assert data["payment"]["due_dates"] == ["2025-10-15"]
    assert data["footer"] == ["Dziękujemy za współpracę", "KRS: 0000123456"]


def test_generate_pdf_bytes(generator):
    pdf = generator.generate_pdf(INVOICE_XML.encode("utf-8"), ksef_number="K-1")
    assert pdf.startswith(b"%PDF-")


def test_generate_pdf_file(generator, tmp_path):
    path = str(tmp_path / "invoice.pdf")

    assert generator.generate_pdf(INVOICE_XML, path) == path
    with open(path, "rb") as f:
        assert f.read(5) == b"%PDF-"


def test_generate_pdf_from_dict(generator):
    payload = {"tns:Faktura": {"tns:Fa": {"tns:P_2": "FV/2", "tns:P_15": "10.00"}}}
    assert generator.generate_pdf(payload).startswith(b"%PDF-")


@pytest.mark.parametrize("payload", ["not xml", "<Other><Fa/></Other>", {"ksefNumber": "K-1"}, 42])
def test_generate_pdf_rejects_non_invoice(generator, payload):
    with pytest.raises(ksefError.PayloadUnrecognized):
        generator.generate_pdf(payload)


def test_format_amount():
    assert format_amount(1234567.5) == "1 234 567,50 PLN"
    assert format_amount(3, "") == "3,00"

import io
import os
import logging
from xml.sax.saxutils import escape

from lxml import etree

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont, TTFError
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer

from ksef import ksefError

FONT_CANDIDATES = (
    ('DejaVuSans', '/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf'),
    ('DejaVuSans', '/usr/share/fonts/TTF/DejaVuSans.ttf'),
    ('DejaVuSans', '/usr/share/fonts/dejavu/DejaVuSans.ttf'),
    ('DejaVuSans', '/Library/Fonts/DejaVuSans.ttf'),
    ('Arial', os.path.join(os.environ.get('WINDIR', 'C:\\Windows'), 'Fonts', 'arial.ttf')),
)

PAYMENT_FORMS = {
    '1': 'gotówka', '2': 'karta', '3': 'bon', '4': 'czek',
    '5': 'kredyt', '6': 'przelew', '7': 'mobilna',
}

VAT_RATE_FIELDS = (
    ('P_13_1', 'P_14_1', '23%'),
    ('P_13_2', 'P_14_2', '8%'),
    ('P_13_3', 'P_14_3', '5%'),
    ('P_13_4', 'P_14_4', 'ryczałt taxi'),
    ('P_13_5', 'P_14_5', 'OSS'),
    ('P_13_6_1', None, '0%'),
    ('P_13_6_2', None, '0% (WDT)'),
    ('P_13_6_3', None, '0% (eksport)'),
    ('P_13_7', None, 'zw'),
    ('P_13_8', None, 'np'),
)

_FONT_NAME = None


def _register_font(logger: logging.Logger) -> str:
    global _FONT_NAME
    if _FONT_NAME:
        return _FONT_NAME

    _FONT_NAME = 'Helvetica'
    for font_name, font_path in FONT_CANDIDATES:
        if not os.path.exists(font_path):
            continue
        try:
            pdfmetrics.registerFont(TTFont(font_name, font_path))
        except (TTFError, OSError) as e:
            logger.warning(f"Failed to register font {font_path}: {e}")
            continue
        _FONT_NAME = font_name
        logger.info(f"Registered font: {font_path}")
        break
    else:
        logger.warning("No TrueType font with Polish characters found, using Helvetica")

    return _FONT_NAME


def _local_name(tag: str) -> str:
    if '}' in tag:
        tag = tag.rsplit('}', 1)[1]
    if ':' in tag:
        tag = tag.rsplit(':', 1)[1]
    return tag


def xml_to_tree(xml):
    """
    Convert invoice XML into nested dicts, lists and strings.

    Element names lose their namespace, repeated siblings become lists and leaf
    elements become their text. Attributes are dropped.

    Returns:
        {root_name: subtree}
    """
    if isinstance(xml, str):
        xml = xml.lstrip('\ufeff').encode('utf-8')

    parser = etree.XMLParser(resolve_entities=False, no_network=True, remove_comments=True)
    root = etree.fromstring(xml, parser)
    return {_local_name(root.tag): _element_to_tree(root)}


def _element_to_tree(element):
    children = [child for child in element if isinstance(child.tag, str)]
    if not children:
        return (element.text or '').strip()

    node = {}
    for child in children:
        name = _local_name(child.tag)
        value = _element_to_tree(child)
        if name not in node:
            node[name] = value
        elif isinstance(node[name], list):
            node[name].append(value)
        else:
            node[name] = [node[name], value]
    return node


def _first(value):
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _find_key(node, name: str):
    node = _first(node)
    if not isinstance(node, dict):
        return None

    if name in node:
        return name
    wanted = name.lower()
    for key in node:
        if _local_name(key).lower() == wanted:
            return key
    return None


def find_by_local_name(node, name: str):
    """
    Child of node named name, ignoring case and namespace prefix.

    Repeated children yield the first one. Works on trees from xml_to_tree()
    and on JSON-shaped dicts ('tns:Fa', '{uri}Fa').
    """
    key = _find_key(node, name)
    if key is None:
        return None
    return _first(_first(node)[key])


def find_all_by_local_name(node, name: str) -> list:
    key = _find_key(node, name)
    if key is None:
        return []
    value = _first(node)[key]
    return value if isinstance(value, list) else [value]


def text_of(node, *path: str, default: str = '') -> str:
    for name in path:
        node = find_by_local_name(node, name)
    if node is None or isinstance(node, dict):
        return default
    return str(node).strip() or default


def parse_amount(value: str) -> float:
    if not value:
        return 0.0
    try:
        return float(value.replace(',', '.').replace(' ', ''))
    except ValueError:
        return 0.0


def format_amount(amount: float, currency: str = 'PLN') -> str:
    text = f"{amount:,.2f}".replace(',', ' ').replace('.', ',')
    return f"{text} {currency}".strip()


class ksefPDFGenerator:
    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(__name__)

        self.font_name = _register_font(self.logger)
        self.styles = getSampleStyleSheet()
        self._setup_styles()

    def _setup_styles(self):
        for style_name in ('Normal', 'Heading1', 'Heading2', 'Heading3', 'BodyText'):
            self.styles[style_name].fontName = self.font_name

        extra = {
            'InvoiceTitle': dict(fontSize=16, leading=20, alignment=1, spaceAfter=6),
            'SectionHeader': dict(fontSize=11, leading=14, spaceBefore=8, spaceAfter=4,
                                  textColor=colors.HexColor('#333333')),
            'PartyName': dict(fontSize=10, leading=12),
            'PartyDetails': dict(fontSize=9, leading=11, textColor=colors.HexColor('#555555')),
            'Footer': dict(fontSize=8, leading=10, textColor=colors.HexColor('#666666')),
        }
        for name, options in extra.items():
            self.styles.add(ParagraphStyle(name=name, fontName=self.font_name, **options))

    def _faktura(self, payload):
        if isinstance(payload, (str, bytes)):
            try:
                tree = xml_to_tree(payload)
            except etree.XMLSyntaxError as e:
                raise ksefError.PayloadUnrecognized(f"Invoice is not valid XML: {e}")
        elif isinstance(payload, dict):
            tree = payload
        else:
            raise ksefError.PayloadUnrecognized(f"Cannot render invoice from {type(payload).__name__}")

        for key, value in tree.items():
            if 'faktura' in _local_name(key).lower():
                return _first(value)
        raise ksefError.PayloadUnrecognized("No Faktura element in invoice")

    def _party(self, podmiot) -> dict:
        dane = find_by_local_name(podmiot, 'DaneIdentyfikacyjne')
        adres = find_by_local_name(podmiot, 'Adres')
        address = text_of(adres, 'AdresL1')
        if not address:
            address = ' '.join(filter(None, (
                text_of(adres, 'UlicaNumer'), text_of(adres, 'KodPocztowy'), text_of(adres, 'Miasto')
            )))
        return {
            'name': text_of(dane, 'Nazwa', default='N/A'),
            'nip': text_of(dane, 'NIP', default='N/A'),
            'address1': address,
            'address2': text_of(adres, 'AdresL2'),
        }

    def extract_data(self, payload, ksef_number: str = None) -> dict:
        """
        Pull the fields shown on the document out of an FA invoice.

        Args:
            payload: Invoice XML (str/bytes) or its dict tree
            ksef_number: KSeF number, not present in the XML itself

        Raises:
            PayloadUnrecognized: when the payload holds no Faktura element
        """
        faktura = self._faktura(payload)
        fa = find_by_local_name(faktura, 'Fa')
        naglowek = find_by_local_name(faktura, 'Naglowek')

        data = {
            'ksef_number': ksef_number or text_of(naglowek, 'NumerKSeF', default='N/A'),
            'invoice_number': text_of(fa, 'P_2', default='N/A'),
            'issue_date': text_of(fa, 'P_1', default='N/A'),
            'sale_date': text_of(fa, 'P_6'),
            'currency': text_of(fa, 'KodWaluty', default='PLN'),
            'seller': self._party(find_by_local_name(faktura, 'Podmiot1')),
            'buyer': self._party(find_by_local_name(faktura, 'Podmiot2')),
            'items': [],
            'rates': [],
            'gross': parse_amount(text_of(fa, 'P_15')),
            'payment': {},
            'descriptions': [],
            'footer': [],
        }

        for net_field, vat_field, label in VAT_RATE_FIELDS:
            net = parse_amount(text_of(fa, net_field))
            if net:
                vat = parse_amount(text_of(fa, vat_field)) if vat_field else 0.0
                data['rates'].append({'label': label, 'net': net, 'vat': vat})

        for wiersz in find_all_by_local_name(fa, 'FaWiersz'):
            rate = text_of(wiersz, 'P_12')
            data['items'].append({
                'lp': text_of(wiersz, 'NrWierszaFa'),
                'name': text_of(wiersz, 'P_7'),
                'unit': text_of(wiersz, 'P_8A', default='szt.'),
                'qty': parse_amount(text_of(wiersz, 'P_8B', default='1')),
                'price': parse_amount(text_of(wiersz, 'P_9A') or text_of(wiersz, 'P_9B')),
                'value': parse_amount(text_of(wiersz, 'P_11') or text_of(wiersz, 'P_11A')),
                'rate': f"{rate}%" if rate.isdigit() else rate,
            })

        for opis in find_all_by_local_name(fa, 'DodatkowyOpis'):
            key, value = text_of(opis, 'Klucz'), text_of(opis, 'Wartosc')
            if key or value:
                data['descriptions'].append((key, value))

        platnosc = find_by_local_name(fa, 'Platnosc')
        if platnosc is not None:
            form = text_of(platnosc, 'FormaPlatnosci')
            data['payment'] = {
                'form': PAYMENT_FORMS.get(form, form),
                'paid': text_of(platnosc, 'Zaplacono') == '1',
                'paid_on': text_of(platnosc, 'DataZaplaty'),
                'due_dates': [
                    text_of(termin, 'Termin') or text_of(termin)
                    for termin in find_all_by_local_name(platnosc, 'TerminPlatnosci')
                ],
                'bank_account': text_of(platnosc, 'RachunekBankowy', 'NrRB'),
                'bank_name': text_of(platnosc, 'RachunekBankowy', 'NazwaBanku'),
                'description': text_of(platnosc, 'OpisPlatnosci'),
            }

        stopka = find_by_local_name(faktura, 'Stopka')
        for informacje in find_all_by_local_name(stopka, 'Informacje'):
            line = text_of(informacje, 'StopkaFaktury')
            if line:
                data['footer'].append(line)
        rejestry = find_by_local_name(stopka, 'Rejestry')
        for field in ('KRS', 'REGON', 'BDO'):
            value = text_of(rejestry, field)
            if value:
                data['footer'].append(f"{field}: {value}")

        return data

    def _p(self, text, style: str = 'Normal') -> Paragraph:
        return Paragraph(escape(str(text)), self.styles[style])

    def _header(self, data: dict) -> list:
        lines = [
            f"Numer KSeF: {data['ksef_number']}",
            f"Data wystawienia: {data['issue_date']}",
        ]
        if data['sale_date']:
            lines.append(f"Data sprzedaży: {data['sale_date']}")
        return [
            self._p(f"Faktura VAT nr {data['invoice_number']}", 'InvoiceTitle'),
            *[self._p(line) for line in lines],
            Spacer(1, 8*mm),
        ]

    def _parties(self, data: dict) -> list:
        seller, buyer = data['seller'], data['buyer']
        rows = [
            [self._p('Sprzedawca', 'SectionHeader'), self._p('Nabywca', 'SectionHeader')],
            [self._p(seller['name'], 'PartyName'), self._p(buyer['name'], 'PartyName')],
            [self._p(f"NIP: {seller['nip']}", 'PartyDetails'), self._p(f"NIP: {buyer['nip']}", 'PartyDetails')],
            [self._p(seller['address1'], 'PartyDetails'), self._p(buyer['address1'], 'PartyDetails')],
            [self._p(seller['address2'], 'PartyDetails'), self._p(buyer['address2'], 'PartyDetails')],
        ]
        table = Table(rows, colWidths=[90*mm, 90*mm])
        table.setStyle(TableStyle([
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('LEFTPADDING', (0, 0), (-1, -1), 0),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 2),
        ]))
        return [table, Spacer(1, 6*mm)]

    def _items(self, data: dict) -> list:
        rows = [['Lp.', 'Nazwa towaru/usługi', 'J.m.', 'Ilość', 'Cena', 'Wartość', 'VAT']]
        for index, item in enumerate(data['items'], 1):
            rows.append([
                item['lp'] or str(index),
                self._p(item['name']),
                item['unit'],
                f"{item['qty']:g}".replace('.', ','),
                format_amount(item['price'], ''),
                format_amount(item['value'], ''),
                item['rate'],
            ])

        table = Table(rows, colWidths=[10*mm, 70*mm, 15*mm, 15*mm, 25*mm, 25*mm, 15*mm], repeatRows=1)
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (-1, -1), self.font_name),
            ('FONTSIZE', (0, 0), (-1, -1), 8),
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#4472C4')),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
            ('ALIGN', (3, 1), (-1, -1), 'RIGHT'),
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#CCCCCC')),
        ]))
        return [self._p('Pozycje faktury', 'SectionHeader'), table, Spacer(1, 6*mm)]

    def _totals(self, data: dict) -> list:
        currency = data['currency']
        rows = []
        for rate in data['rates']:
            rows.append([f"Wartość netto ({rate['label']})", format_amount(rate['net'], currency)])
            if rate['vat']:
                rows.append([f"VAT ({rate['label']})", format_amount(rate['vat'], currency)])
        rows.append(['Razem do zapłaty', format_amount(data['gross'], currency)])

        table = Table(rows, colWidths=[120*mm, 55*mm])
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (-1, -1), self.font_name),
            ('ALIGN', (0, 0), (-1, -1), 'RIGHT'),
            ('LINEABOVE', (0, -1), (-1, -1), 0.5, colors.black),
        ]))
        return [self._p('Podsumowanie', 'SectionHeader'), table]

    def _payment(self, data: dict) -> list:
        payment = data['payment']
        if not any(payment.values()):
            return []

        lines = []
        if payment['form']:
            lines.append(f"Forma płatności: {payment['form']}")
        if payment['paid']:
            lines.append(f"Zapłacono: {payment['paid_on'] or 'tak'}")
        lines.extend(f"Termin płatności: {due}" for due in payment['due_dates'] if due)
        if payment['bank_account']:
            account = f"Nr rachunku: {payment['bank_account']}"
            if payment['bank_name']:
                account += f" ({payment['bank_name']})"
            lines.append(account)
        if payment['description']:
            lines.append(payment['description'])

        return [Spacer(1, 4*mm), self._p('Płatność', 'SectionHeader'), *[self._p(line) for line in lines]]

    def _notes(self, data: dict) -> list:
        elements = []
        if data['descriptions']:
            elements += [Spacer(1, 4*mm), self._p('Informacje dodatkowe', 'SectionHeader')]
            elements += [self._p(f"{key}: {value}" if key else value) for key, value in data['descriptions']]
        if data['footer']:
            elements.append(Spacer(1, 8*mm))
            elements += [self._p(line, 'Footer') for line in data['footer']]
        elements.append(Spacer(1, 4*mm))
        elements.append(self._p("Faktura pobrana z Krajowego Systemu e-Faktur (KSeF)", 'Footer'))
        return elements

    def generate_pdf(self, payload, output_path: str = None, ksef_number: str = None):
        """
        Generate PDF from a KSeF invoice.

        Args:
            payload: Invoice XML (str/bytes) or its dict tree
            output_path: File to write, the PDF is returned as bytes when omitted
            ksef_number: KSeF number printed in the header

        Returns:
            output_path, or the PDF bytes

        Raises:
            PayloadUnrecognized: when the payload is not an FA invoice
        """
        data = self.extract_data(payload, ksef_number)
        self.logger.debug(f"Rendering invoice {data['invoice_number']} ({len(data['items'])} lines)")

        target = output_path or io.BytesIO()
        doc = SimpleDocTemplate(
            target,
            pagesize=A4,
            rightMargin=15*mm,
            leftMargin=15*mm,
            topMargin=15*mm,
            bottomMargin=15*mm,
            title=f"Faktura {data['invoice_number']}",
        )
        doc.build(
            self._header(data) + self._parties(data) + self._items(data)
            + self._totals(data) + self._payment(data) + self._notes(data)
        )

        if output_path:
            return output_path
        return target.getvalue()

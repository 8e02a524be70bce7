import json
import logging
import datetime

from sqlalchemy.exc import SQLAlchemyError

from ksef import ksefCache
from ksef import ksefError
from ksef import ksefUnwrap
from ksef.ksefClient import SUBJECT_TYPES
from ksef.ksefPDFGenerator import ksefPDFGenerator

CACHE_FRESHNESS = datetime.timedelta(minutes=5)
QUERY_RANGE = datetime.timedelta(days=30)
PDF_SIGNATURE = b'%PDF-'
UNKNOWN_NAME = 'Unknown'


class ksefGateway:
    """
    Invoice access on top of an authenticated session and the local cache.

    Listings come from the cache while it is fresh, otherwise from KSeF (and are
    written back to the cache). Remote failures never propagate: the cached page,
    or nothing, is returned and the failure is kept in last_error.
    """

    def __init__(
        self,
        client,
        session,
        cache,
        pdf_generator=None,
        freshness: datetime.timedelta = CACHE_FRESHNESS,
        logger: logging.Logger = None
    ):
        """
        Args:
            client: ksefClient for the data endpoints
            session: ksefSession sharing the client
            cache: ksefCache
            pdf_generator: ksefPDFGenerator, created on first PDF request if not given
            freshness: Age below which the cached listing is served without a remote call
        """
        self.client = client
        self.session = session
        self.cache = cache
        self.pdf_generator = pdf_generator
        self.freshness = freshness

        self.last_error = None

        self.logger = logger or logging.getLogger(__name__)

    def _read_cache(self, direction: str, limit: int, offset: int) -> list:
        try:
            return self.cache.query_by_direction(direction, limit=limit, offset=offset)
        except SQLAlchemyError as e:
            self.logger.error(f"Error reading invoice cache: {e}")
            return []

    def _cached_summaries(self, records: list) -> list:
        if records:
            self.logger.info(f"Returning {len(records)} cached invoices")
        return [record.to_summary() for record in records]

    def _ensure_session(self) -> bool:
        if self.session.is_valid():
            return True
        self.logger.info("Session not valid, authenticating...")
        try:
            self.session.authenticate()
        except ksefError.ksefError as e:
            self.last_error = e
            self.logger.error(f"KSeF authentication failed - cannot reach invoices: {e.message}")
            return False
        return True

    def list_invoices(self, direction: str, limit: int = 100, offset: int = 0) -> list:
        """
        List invoice summaries.

        Args:
            direction: 'received' (Subject2) or 'sent' (Subject1)
            limit: Page size
            offset: Page offset

        Returns:
            list of summary dicts, newest cached first when served from the
            cache, upstream order when fetched from KSeF
        """
        if direction not in SUBJECT_TYPES:
            raise ValueError(f"Unknown invoice direction: {direction}. Available: {list(SUBJECT_TYPES.keys())}")

        cached = self._read_cache(direction, limit, offset)
        if cached and ksefCache.utcnow() - cached[0].cached_at < self.freshness:
            self.logger.info(f"Using cached {direction} invoices ({len(cached)} invoices)")
            self.last_error = None
            return self._cached_summaries(cached)

        if not self._ensure_session():
            return self._cached_summaries(cached)

        date_to = datetime.datetime.now(datetime.timezone.utc)
        date_from = date_to - QUERY_RANGE
        self.logger.info(f"Fetching {direction} invoices from KSeF (limit: {limit}, offset: {offset})")
        self.logger.debug(f"Date range: {date_from.isoformat()} to {date_to.isoformat()}")

        try:
            response = self.client.query_metadata(
                SUBJECT_TYPES[direction], date_from, date_to, page_size=limit, page_offset=offset
            )
        except ksefError.Unauthorized as e:
            self.logger.error("Authentication failed - token may be invalid or expired")
            self.session.invalidate()
            self.last_error = e
            return self._cached_summaries(self._read_cache(direction, limit, offset))
        except ksefError.ksefError as e:
            self.logger.error(f"Error fetching {direction} invoices from KSeF: {e.message}")
            self.last_error = e
            return self._cached_summaries(self._read_cache(direction, limit, offset))

        metadata = response.get('invoices') if isinstance(response, dict) else None
        if not isinstance(metadata, list):
            self.logger.warning("Invoice metadata response empty or malformed")
            self.last_error = ksefError.ksefError("Malformed invoice metadata response", response_data=response)
            return self._cached_summaries(self._read_cache(direction, limit, offset))

        invoices = [self._map_metadata(item, direction) for item in metadata]
        self._store(invoices)

        self.last_error = None
        self.logger.info(f"Fetched {len(invoices)} {direction} invoices from KSeF")
        return invoices

    def _store(self, invoices: list):
        self.logger.info(f"Caching {len(invoices)} invoices...")
        for invoice in invoices:
            if not invoice.get('id'):
                self.logger.warning("Skipping invoice without KSeF number")
                continue
            try:
                self.cache.upsert(ksefCache.InvoiceRecord.from_summary(invoice))
            except (SQLAlchemyError, ValueError) as e:
                self.logger.error(f"Error caching invoice {invoice['id']}: {e}")

    def _map_metadata(self, metadata: dict, direction: str) -> dict:
        ksef_number = metadata.get('ksefNumber') or metadata.get('ksefReferenceNumber')
        seller = metadata.get('seller') or {}
        buyer = metadata.get('buyer') or {}
        buyer_identifier = buyer.get('identifier') or {}

        return {
            'id': ksef_number,
            'ksefNumber': ksef_number,
            'invoiceNumber': metadata.get('invoiceNumber'),
            'number': metadata.get('invoiceNumber'),
            'issueDate': metadata.get('issueDate'),
            'dueDate': metadata.get('invoicingDate') or metadata.get('issueDate'),
            'amount': metadata.get('grossAmount'),
            'netAmount': metadata.get('netAmount'),
            'grossAmount': metadata.get('grossAmount'),
            'currency': metadata.get('currency') or 'PLN',
            'status': direction,
            'type': direction,
            'seller': {
                'name': seller.get('name') or UNKNOWN_NAME,
                'taxId': seller.get('nip') or '',
            },
            'buyer': {
                'name': buyer.get('name') or UNKNOWN_NAME,
                'taxId': buyer_identifier.get('value') or buyer.get('nip') or '',
            },
        }

    def get_invoice_details(self, invoice_id: str):
        """
        Download and unwrap a single invoice.

        Returns:
            XML/text str, parsed JSON, raw bytes, or None on any failure
        """
        if not self._ensure_session():
            return None

        self.logger.info(f"Fetching invoice details for: {invoice_id}")
        try:
            content, content_type = self.client.get_invoice(invoice_id)
            payload = ksefUnwrap.unwrap(content, content_type)
        except ksefError.Unauthorized as e:
            self.logger.error("Authentication failed - token may be invalid or expired")
            self.session.invalidate()
            self.last_error = e
            return None
        except ksefError.ksefError as e:
            self.logger.error(f"Error fetching invoice details: {e.message}")
            self.last_error = e
            return None

        self.last_error = None
        self.logger.info(f"Retrieved invoice details for {invoice_id}")
        return payload

    def download_invoice_xml(self, invoice_id: str) -> bytes:
        payload = self.get_invoice_details(invoice_id)
        if payload is None:
            return None
        if isinstance(payload, str):
            return payload.encode('utf-8')
        if isinstance(payload, (dict, list)):
            return json.dumps(payload, indent=2, ensure_ascii=False).encode('utf-8')
        return bytes(payload)

    def download_invoice_pdf(self, invoice_id: str) -> bytes:
        """
        Render invoice as PDF.

        Returns:
            PDF bytes, None when the invoice could not be fetched or rendered
        """
        payload = self.get_invoice_details(invoice_id)
        if payload is None:
            return None
        if isinstance(payload, bytes):
            self.logger.error(f"Invoice {invoice_id} payload is not text, cannot render PDF")
            return None

        if self.pdf_generator is None:
            self.pdf_generator = ksefPDFGenerator(logger=self.logger)

        try:
            pdf = self.pdf_generator.generate_pdf(payload, ksef_number=invoice_id)
        except ksefError.ksefError as e:
            self.logger.error(f"Error generating PDF: {e.message}")
            self.last_error = e
            return None

        if not pdf or not pdf.startswith(PDF_SIGNATURE):
            self.logger.error(f"Generated document for {invoice_id} is not a PDF")
            return None

        self.logger.info(f"Generated PDF for {invoice_id} ({len(pdf)} bytes)")
        return pdf

    def test_connection(self, credential=None) -> bool:
        """Authenticate from scratch and report whether it worked."""
        try:
            self.session.authenticate(credential)
        except ksefError.ksefError as e:
            self.last_error = e
            self.logger.error(f"KSeF connection test failed: {e.message}")
            return False
        self.last_error = None
        return True

import io
import gzip
import json
import zlib
import base64
import binascii
import logging
import zipfile

from ksef import ksefError

XML_PROLOG = '<?xml'

PACKAGE_FIELDS = (
    'invoicePackage',
    'invoiceFile',
    'invoiceFileContent',
    'invoiceBinaryContent',
    'invoiceBase64',
)

logger = logging.getLogger(__name__)


def looks_like_xml(text) -> bool:
    return isinstance(text, str) and text.lstrip('\ufeff \t\r\n').startswith(XML_PROLOG)


def decode_package(base64_text: str) -> str:
    """
    Decode a base64 invoice package (gzip, zip or plain) to text.

    Every layer is tried on its own; a layer that fails is skipped.

    Returns:
        Decoded text, or None when nothing usable was found
    """
    try:
        package = base64.b64decode(base64_text)
    except (binascii.Error, ValueError, TypeError) as e:
        logger.debug(f"Invoice package is not base64: {e}")
        return None

    try:
        text = gzip.decompress(package).decode('utf-8')
        if looks_like_xml(text):
            return text
    except (OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
        logger.debug(f"Invoice package is not gzip: {e}")

    try:
        with zipfile.ZipFile(io.BytesIO(package)) as archive:
            names = archive.namelist()
            if names:
                text = archive.read(names[0]).decode('utf-8', errors='replace')
                if text.strip():
                    return text
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError, zlib.error) as e:
        logger.debug(f"Invoice package is not zip: {e}")

    text = package.decode('utf-8', errors='replace')
    if text.strip():
        return text

    return None


def unwrap(raw, content_type: str = None):
    """
    Extract invoice content from a KSeF response body.

    The API returns plain XML, a JSON envelope with a packaged (base64
    gzip/zip) invoice, or bare text, depending on the endpoint.

    Args:
        raw: Response body (bytes or already decoded str)
        content_type: Value of the Content-Type header

    Returns:
        XML/text as str, parsed JSON when no package could be extracted, or
        the raw bytes when the body is not UTF-8

    Raises:
        PayloadUnrecognized: on an empty body
    """
    if raw is None or len(raw) == 0:
        raise ksefError.PayloadUnrecognized("Empty invoice payload")

    if isinstance(raw, str):
        text = raw
        raw = raw.encode('utf-8')
    else:
        try:
            text = bytes(raw).decode('utf-8')
        except UnicodeDecodeError:
            text = None

    content_type = (content_type or '').lower()
    if text is not None and 'json' in content_type:
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            logger.debug(f"JSON content type but body is not JSON: {e}")
        else:
            if isinstance(parsed, dict):
                package = next((parsed[field] for field in PACKAGE_FIELDS if parsed.get(field)), None)
                if isinstance(package, str):
                    xml = decode_package(package)
                    if xml:
                        logger.info("Extracted XML from packaged invoice payload")
                        return xml

            # a JSON string holding XML is returned as is, like any other JSON value
            if parsed:
                return parsed
            logger.debug("Empty JSON value, returning body as text")

    if looks_like_xml(text):
        return text

    return text or bytes(raw)
